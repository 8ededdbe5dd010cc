"""Caching weather proxy with API key rotation."""

__version__ = "0.1.0"
