"""Unit tests for cache entries and consumer state derivation."""

from __future__ import annotations

import dataclasses
import math

import pytest
from duck_query.domain.entities import CacheEntry, ConsumerState, QueryKey
from duck_query.domain.enums import FetchStatus, RetryState
from duck_query.domain.exceptions import ProducerFailure


@pytest.fixture
def key() -> QueryKey:
    """Create a sample key."""
    return QueryKey("todos")


class TestCacheEntry:
    """Test CacheEntry behavior."""

    def test_defaults(self, key: QueryKey) -> None:
        """Test a fresh entry is empty and idle."""
        entry = CacheEntry(key=key, entry_id=1)

        assert entry.has_result is False
        assert entry.timestamp is None
        assert entry.in_flight is None
        assert entry.is_fetching is False
        assert entry.retry_state == RetryState.IDLE
        assert entry.fetch_status == FetchStatus.IDLE
        assert entry.gc_time == 300_000.0

    def test_entries_are_immutable(self, key: QueryKey) -> None:
        """Test entries cannot be mutated in place."""
        entry = CacheEntry(key=key, entry_id=1)
        with pytest.raises(dataclasses.FrozenInstanceError):
            entry.result = 1  # type: ignore[misc]

    def test_age_in_milliseconds(self, key: QueryKey) -> None:
        """Test age is reported in milliseconds."""
        entry = CacheEntry(key=key, entry_id=1, timestamp=10.0)
        assert entry.age(10.25) == pytest.approx(250.0)
        assert CacheEntry(key=key, entry_id=1).age(10.0) is None

    def test_staleness(self, key: QueryKey) -> None:
        """Test staleness uses a strict greater-than on age."""
        entry = CacheEntry(key=key, entry_id=1, timestamp=0.0)

        assert not entry.is_stale(100, 0.05)
        assert not entry.is_stale(100, 0.099)
        assert entry.is_stale(100, 0.15)
        assert not entry.is_stale(math.inf, 1e9)

    def test_without_timestamp_is_stale(self, key: QueryKey) -> None:
        """Test an entry that never succeeded is always stale."""
        assert CacheEntry(key=key, entry_id=1).is_stale(math.inf, 0.0)


class TestConsumerState:
    """Test ConsumerState derivation."""

    def test_initial(self) -> None:
        """Test the initial state shows the initial value."""
        state = ConsumerState.initial(initial_value=[])
        assert state.value == []
        assert state.is_stale is True
        assert state.is_loading is False
        assert state.fetch_status == FetchStatus.IDLE

    def test_from_missing_entry(self) -> None:
        """Test state of an evicted key."""
        state = ConsumerState.from_entry(None, is_stale=True, initial_value="n/a")
        assert state.value == "n/a"
        assert not state.is_success

    def test_loading_without_result(self, key: QueryKey) -> None:
        """Test a first fetch reports loading."""
        entry = CacheEntry(
            key=key,
            entry_id=1,
            fetch_status=FetchStatus.FETCHING,
            retry_state=RetryState.FETCHING,
        )
        state = ConsumerState.from_entry(entry, is_stale=True)

        assert state.is_loading
        assert state.fetch_status == FetchStatus.FETCHING
        assert not state.is_fetched

    def test_refetch_with_result_is_not_loading(self, key: QueryKey) -> None:
        """Test a background refetch keeps showing the cached value."""
        entry = CacheEntry(
            key=key,
            entry_id=1,
            result=42,
            has_result=True,
            timestamp=0.0,
            fetch_status=FetchStatus.FETCHING,
            fetch_count=1,
        )
        state = ConsumerState.from_entry(entry, is_stale=True)

        assert state.value == 42
        assert not state.is_loading
        assert state.is_success
        assert state.is_fetched

    def test_retry_pending_without_result_is_loading(self, key: QueryKey) -> None:
        """Test waiting for a retry still counts as loading."""
        failure = ProducerFailure(key, RuntimeError("down"))
        entry = CacheEntry(
            key=key,
            entry_id=1,
            error=failure,
            retry_count=1,
            retry_state=RetryState.RETRY_PENDING,
            fetch_count=1,
        )
        state = ConsumerState.from_entry(entry, is_stale=True)

        assert state.is_loading
        assert state.is_error
        assert state.error is failure
        assert state.retry_count == 1
        assert state.fetch_status == FetchStatus.IDLE

    def test_stale_while_error(self, key: QueryKey) -> None:
        """Test a failure keeps the last good value visible."""
        entry = CacheEntry(
            key=key,
            entry_id=1,
            result=42,
            has_result=True,
            timestamp=0.0,
            error=ProducerFailure(key, RuntimeError("down")),
            retry_state=RetryState.FAILED,
            fetch_count=2,
        )
        state = ConsumerState.from_entry(entry, is_stale=False, initial_value=0)

        assert state.value == 42
        assert state.is_error
        assert not state.is_success
        assert not state.is_loading
