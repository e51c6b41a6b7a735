"""Command line tools for duck-query."""
