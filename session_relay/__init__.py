"""Relay out-of-band replies into live interactive CLI sessions."""

__version__ = "0.1.0"
