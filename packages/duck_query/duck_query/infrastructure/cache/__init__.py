"""Cache infrastructure for the query engine."""

from __future__ import annotations

from .query_store import QueryStore

__all__ = ["QueryStore"]
