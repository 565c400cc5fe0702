"""Redundant CREATE3 salt search with first-valid-result races."""

__version__ = "0.1.0"
