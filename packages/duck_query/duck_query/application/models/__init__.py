"""Application models for the query engine."""

from __future__ import annotations

from .query_options import QueryOptions

__all__ = ["QueryOptions"]
