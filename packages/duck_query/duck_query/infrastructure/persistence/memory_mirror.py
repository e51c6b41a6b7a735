"""In-memory durable mirror."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from duck_query.domain.interfaces import DurableMirror, MirrorRecord
from duck_query.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from duck_query.domain.entities import CacheEntry, QueryKey

logger = get_logger(__name__)


class InMemoryMirror(DurableMirror):
    """Mirror that keeps the last settled value per key in a dict.

    It outlives the ``QueryClient`` it is attached to, which makes it useful
    for warm restarts within one process and as the reference implementation
    for real storage backends.
    """

    def __init__(self) -> None:
        """Initialize an empty mirror."""
        self._records: dict[QueryKey, MirrorRecord] = {}
        self._lock = asyncio.Lock()

    async def on_miss(self, key: QueryKey) -> MirrorRecord | None:
        """Return the mirrored record for a key, if any."""
        async with self._lock:
            record = self._records.get(key)

        logger.debug(
            "Mirror lookup",
            extra={"key": str(key), "found": record is not None},
        )
        return record

    async def on_settle(self, key: QueryKey, entry: CacheEntry) -> None:
        """Store the settled value of a key."""
        async with self._lock:
            self._records[key] = MirrorRecord(
                value=entry.result,
                updated_at=entry.updated_at or datetime.now(UTC),
            )

    async def on_evict(self, key: QueryKey) -> None:
        """Drop the record of an evicted key."""
        async with self._lock:
            self._records.pop(key, None)

    async def seed(self, key: QueryKey, value: object) -> None:
        """Write a record directly, as if a previous process had settled it."""
        async with self._lock:
            self._records[key] = MirrorRecord(value=value, updated_at=datetime.now(UTC))

    def __len__(self) -> int:
        return len(self._records)
