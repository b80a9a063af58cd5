"""Venue client packages."""
