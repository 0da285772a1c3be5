"""Bakame AI resilience substrate: rate limiting, caching and circuit breaking."""

__version__ = "1.0.0"
