"""Domain events published by the fetch orchestrator."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from .entities import CacheEntry, QueryKey


class QueryEventType(Enum):
    """Types of cache entry transitions."""

    FETCH_STARTED = "fetch_started"
    FETCH_SUCCEEDED = "fetch_succeeded"
    FETCH_FAILED = "fetch_failed"
    FETCH_PAUSED = "fetch_paused"
    DATA_SET = "data_set"
    ENTRY_EVICTED = "entry_evicted"
    SETTLEMENT_DROPPED = "settlement_dropped"


@dataclass
class QueryEvent:
    """A transition of one key's cache entry.

    ``entry`` is the snapshot stored after the transition; for evictions and
    dropped settlements it is the entry that no longer lives in the store.
    """

    event_type: QueryEventType
    key: QueryKey
    timestamp: datetime
    entry: CacheEntry | None = None
    metadata: dict[str, Any] | None = None

    @property
    def refreshes_data(self) -> bool:
        """Check if the event carries a freshly produced value."""
        return self.event_type in (QueryEventType.FETCH_SUCCEEDED, QueryEventType.DATA_SET)


# Handlers run synchronously, in publication order.
QueryEventHandler = Callable[[QueryEvent], None]
