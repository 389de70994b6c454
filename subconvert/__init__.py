"""Clash subscription conversion: fetch, rewrite with a user routine, serve."""

__version__ = "1.0.0"
