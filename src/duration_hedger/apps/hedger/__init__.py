"""Duration-bounded hedging of Polymarket 15-minute Up/Down markets."""
