"""Version information for duck-query."""

__version__ = "0.1.0"
