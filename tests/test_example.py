"""Smoke tests that the package imports and the suite runs."""

from duration_hedger import __version__


def test_version() -> None:
    """Test that version is defined."""
    assert __version__ == "0.1.0"
