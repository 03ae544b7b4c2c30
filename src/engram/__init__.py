"""Engram - semantic long-term memory engine."""

__version__ = "0.1.0"
