"""CLI entry point for the duration hedger.

All command logic lives in the cli subpackage.
"""

from duration_hedger.apps.hedger.cli import app

__all__ = ["app", "main"]


def main() -> None:
    """Run the hedger CLI application."""
    app()


if __name__ == "__main__":
    main()
