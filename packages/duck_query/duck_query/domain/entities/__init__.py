"""Domain entities for the query engine."""

from __future__ import annotations

from .cache_entry import CacheEntry, Producer
from .consumer_state import ConsumerState
from .query_key import QueryKey, freeze

__all__ = [
    "CacheEntry",
    "ConsumerState",
    "Producer",
    "QueryKey",
    "freeze",
]
