"""Cache entry entity.

One entry exists per distinct key. Entries are immutable snapshots: every
state transition builds a new entry with ``dataclasses.replace`` and stores it
as a whole, so a reader never observes a half-applied update.
"""

from __future__ import annotations

import asyncio
import math
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from duck_query.domain.enums import FetchStatus, RetryState

from .query_key import QueryKey

if TYPE_CHECKING:
    from duck_query.application.error_handling import RetryPolicy
    from duck_query.domain.exceptions import DuckQueryError

Producer = Callable[[Any], Awaitable[Any] | Any]


@dataclass(frozen=True)
class CacheEntry:
    """Cached state of one query key.

    Attributes:
        key: Structural key of the entry
        entry_id: Identity of this incarnation of the key; a new id is issued
            after eviction so late settlements for the old one can be dropped
        result: Last successfully produced value
        has_result: Whether ``result`` holds a value
        timestamp: Clock time (seconds) of the last successful production
        updated_at: Wall-clock time of the last successful production
        in_flight: The single pending fetch for this key, if any
        producer: Function able to refresh this entry
        args: Payload last passed to ``producer``
        retry_policy: Retry policy applied to failures of this key
        retry_count: Automatic retries performed since the last success
        retry_state: Position in the retry state machine
        fetch_status: Whether a fetch is running, idle or paused
        error: Last failure, cleared by the next success
        fetch_count: Number of settled fetch attempts
        gc_time: Retention window in milliseconds once unobserved
    """

    key: QueryKey
    entry_id: int
    result: Any = None
    has_result: bool = False
    timestamp: float | None = None
    updated_at: datetime | None = None
    in_flight: asyncio.Future[CacheEntry] | None = None
    producer: Producer | None = None
    args: Any = None
    retry_policy: RetryPolicy | None = None
    retry_count: int = 0
    retry_state: RetryState = RetryState.IDLE
    fetch_status: FetchStatus = FetchStatus.IDLE
    error: DuckQueryError | None = None
    fetch_count: int = 0
    gc_time: float = 300_000.0

    @property
    def is_fetching(self) -> bool:
        """Check if a producer call is outstanding."""
        return self.in_flight is not None

    def age(self, now: float) -> float | None:
        """Milliseconds since the last successful production, if any."""
        if self.timestamp is None:
            return None
        return (now - self.timestamp) * 1000

    def is_stale(self, stale_time: float, now: float) -> bool:
        """Check whether the cached value is older than ``stale_time`` ms.

        An entry without a successful timestamp is always stale.
        """
        age = self.age(now)
        if age is None:
            return True
        if math.isinf(stale_time):
            return False
        return age > stale_time
