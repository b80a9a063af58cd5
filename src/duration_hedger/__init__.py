"""Duration-risk bounded hedging bot for Polymarket binary markets."""

__version__ = "0.1.0"
