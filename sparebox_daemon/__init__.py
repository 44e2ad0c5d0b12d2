"""Sparebox host daemon."""

__version__ = "0.4.0"
