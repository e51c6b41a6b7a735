"""State observed by one consumer bound to a key."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from duck_query.domain.enums import FetchStatus, RetryState

if TYPE_CHECKING:
    from duck_query.domain.exceptions import DuckQueryError

    from .cache_entry import CacheEntry


@dataclass
class ConsumerState:
    """Observable query state of a single binding.

    The state is owned by the binding, never stored in the cache. It is rebuilt
    from the key's cache entry on every transition of that entry.
    """

    value: Any = None
    is_loading: bool = False
    is_error: bool = False
    is_stale: bool = True
    is_fetched: bool = False
    is_success: bool = False
    fetch_status: FetchStatus = FetchStatus.IDLE
    error: DuckQueryError | None = None
    retry_count: int = 0
    updated_at: datetime | None = None

    @classmethod
    def initial(cls, initial_value: Any = None) -> ConsumerState:
        """State of a binding whose key has no entry yet."""
        return cls(value=initial_value)

    @classmethod
    def from_entry(
        cls,
        entry: CacheEntry | None,
        is_stale: bool,
        initial_value: Any = None,
    ) -> ConsumerState:
        """Derive a consumer state from a cache entry.

        Args:
            entry: Current entry of the bound key, or None if absent
            is_stale: Staleness as judged with the consumer's own stale time
            initial_value: Placeholder value shown until a result exists

        Returns:
            Fresh consumer state
        """
        if entry is None:
            return cls(value=initial_value, is_stale=is_stale)

        waiting = entry.fetch_status == FetchStatus.FETCHING or (
            entry.retry_state == RetryState.RETRY_PENDING
        )
        return cls(
            value=entry.result if entry.has_result else initial_value,
            is_loading=not entry.has_result and waiting,
            is_error=entry.error is not None,
            is_stale=is_stale,
            is_fetched=entry.fetch_count > 0,
            is_success=entry.has_result and entry.error is None,
            fetch_status=entry.fetch_status,
            error=entry.error,
            retry_count=entry.retry_count,
            updated_at=entry.updated_at,
        )
