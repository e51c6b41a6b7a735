"""Keyed store of query cache entries."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from typing import Any

from duck_query.domain.entities import CacheEntry, QueryKey
from duck_query.infrastructure.logging import get_logger

logger = get_logger(__name__)


class QueryStore:
    """Single source of truth for cache entries.

    Plain map semantics keyed by the structural ``QueryKey``:
    - ``put`` replaces the whole entry; merging is the caller's job
    - no implicit expiry or eviction, timers live in the expiry scheduler
    - every operation holds one lock, so an entry is seen either before or
      after a write, never in between, even from other threads
    """

    def __init__(self) -> None:
        """Initialize an empty store."""
        self._entries: dict[QueryKey, CacheEntry] = {}
        self._lock = threading.RLock()

        # Statistics
        self._removals = 0

    def get(self, key: QueryKey) -> CacheEntry | None:
        """Get the entry for a key.

        Args:
            key: Query key

        Returns:
            The stored entry, or None if absent
        """
        with self._lock:
            return self._entries.get(key)

    def put(self, key: QueryKey, entry: CacheEntry) -> None:
        """Store an entry, replacing any previous one.

        Args:
            key: Query key
            entry: Complete entry to store
        """
        if entry.key != key:
            raise ValueError(f"Entry for {entry.key} cannot be stored under {key}")
        with self._lock:
            self._entries[key] = entry

    def remove(self, key: QueryKey) -> CacheEntry | None:
        """Remove the entry for a key.

        Args:
            key: Query key

        Returns:
            The removed entry, or None if the key was absent
        """
        with self._lock:
            entry = self._entries.pop(key, None)
            if entry is not None:
                self._removals += 1

        if entry is not None:
            logger.debug("Cache entry removed", extra={"key": str(key)})
        return entry

    def clear(self) -> None:
        """Remove every entry."""
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._removals += count
        logger.info("Query store cleared", extra={"entries_cleared": count})

    def keys(self) -> list[QueryKey]:
        """Snapshot of the stored keys."""
        with self._lock:
            return list(self._entries)

    def find(self, selector: QueryKey | str) -> list[CacheEntry]:
        """Entries whose key matches a name or key selector."""
        with self._lock:
            return [entry for key, entry in self._entries.items() if key.matches(selector)]

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __iter__(self) -> Iterator[QueryKey]:
        return iter(self.keys())

    @property
    def stats(self) -> dict[str, Any]:
        """Get store statistics."""
        with self._lock:
            return {
                "size": len(self._entries),
                "removals": self._removals,
            }
