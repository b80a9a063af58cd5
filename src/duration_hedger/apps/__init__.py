"""Runnable applications built on the client layer."""
