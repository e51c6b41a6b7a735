"""Abstract interface for an optional durable mirror of the cache.

The mirror is best-effort: the engine consults it on a cache miss and feeds it
every successful settlement, but never depends on it for correctness.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from duck_query.domain.entities import CacheEntry, QueryKey


@dataclass(frozen=True)
class MirrorRecord:
    """A value recovered from the mirror."""

    value: Any
    updated_at: datetime | None = None


class DurableMirror(ABC):
    """Extension points for mirroring cache contents outside the process."""

    @abstractmethod
    async def on_miss(self, key: QueryKey) -> MirrorRecord | None:
        """Look up a key the in-memory cache does not hold.

        Args:
            key: Key that missed

        Returns:
            Mirrored record if one exists, None otherwise

        Raises:
            MirrorError: If the mirror cannot be read
        """
        ...

    @abstractmethod
    async def on_settle(self, key: QueryKey, entry: CacheEntry) -> None:
        """Persist the result of a successful fetch.

        Args:
            key: Key that settled
            entry: Entry stored after the settlement

        Raises:
            MirrorError: If the record cannot be written
        """
        ...

    @abstractmethod
    async def on_evict(self, key: QueryKey) -> None:
        """Forget a key evicted from the cache.

        Args:
            key: Evicted key

        Raises:
            MirrorError: If the record cannot be removed
        """
        ...
