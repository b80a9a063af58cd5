"""Core value types and configuration shared across the hedger."""
