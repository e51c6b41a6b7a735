"""Unit tests for the expiry scheduler."""

from __future__ import annotations

import asyncio
import math

import pytest
from duck_query.application.services import ExpiryScheduler
from duck_query.domain.entities import QueryKey
from duck_query.infrastructure.clock import SystemClock


class TestExpiryScheduler:
    """Test per-key staleness and GC timers."""

    @pytest.fixture
    def scheduler(self) -> ExpiryScheduler:
        """Create a scheduler on the event loop clock."""
        return ExpiryScheduler(SystemClock())

    @pytest.fixture
    def key(self) -> QueryKey:
        """Create a sample key."""
        return QueryKey("todos")

    @pytest.mark.asyncio
    async def test_timer_fires_once(self, scheduler: ExpiryScheduler, key: QueryKey) -> None:
        """Test a timer calls back with its key after the delay."""
        fired: list[QueryKey] = []
        scheduler.schedule_gc(key, 0.02, fired.append)
        assert scheduler.has_gc(key)

        await asyncio.sleep(0.01)
        assert fired == []

        await asyncio.sleep(0.05)
        assert fired == [key]
        assert not scheduler.has_gc(key)

    @pytest.mark.asyncio
    async def test_reschedule_replaces_timer(
        self, scheduler: ExpiryScheduler, key: QueryKey
    ) -> None:
        """Test rescheduling cancels the previous timer of the same kind."""
        fired: list[str] = []
        scheduler.schedule_stale(key, 0.02, lambda k: fired.append("first"))
        scheduler.schedule_stale(key, 0.04, lambda k: fired.append("second"))

        await asyncio.sleep(0.1)
        assert fired == ["second"]

    @pytest.mark.asyncio
    async def test_timers_are_independent(
        self, scheduler: ExpiryScheduler, key: QueryKey
    ) -> None:
        """Test cancelling one kind leaves the other running."""
        fired: list[str] = []
        scheduler.schedule_stale(key, 0.02, lambda k: fired.append("stale"))
        scheduler.schedule_gc(key, 0.02, lambda k: fired.append("gc"))
        scheduler.cancel_stale(key)

        await asyncio.sleep(0.06)
        assert fired == ["gc"]

    @pytest.mark.asyncio
    async def test_cancel_both(self, scheduler: ExpiryScheduler, key: QueryKey) -> None:
        """Test cancel removes both timers."""
        fired: list[str] = []
        scheduler.schedule_stale(key, 0.02, lambda k: fired.append("stale"))
        scheduler.schedule_gc(key, 0.02, lambda k: fired.append("gc"))
        scheduler.cancel(key)

        await asyncio.sleep(0.05)
        assert fired == []
        assert not scheduler.has_stale(key)
        assert not scheduler.has_gc(key)

    @pytest.mark.asyncio
    async def test_infinite_delay_schedules_nothing(
        self, scheduler: ExpiryScheduler, key: QueryKey
    ) -> None:
        """Test an infinite delay never fires."""
        scheduler.schedule_gc(key, math.inf, lambda k: None)
        assert not scheduler.has_gc(key)

    @pytest.mark.asyncio
    async def test_callback_may_reschedule(
        self, scheduler: ExpiryScheduler, key: QueryKey
    ) -> None:
        """Test a firing timer can schedule its successor."""
        fired: list[int] = []

        def callback(k: QueryKey) -> None:
            fired.append(len(fired))
            if len(fired) < 3:
                scheduler.schedule_stale(k, 0.005, callback)

        scheduler.schedule_stale(key, 0.005, callback)
        await asyncio.sleep(0.1)

        assert fired == [0, 1, 2]
        assert not scheduler.has_stale(key)

    @pytest.mark.asyncio
    async def test_callback_errors_are_logged(
        self, scheduler: ExpiryScheduler, key: QueryKey, caplog: pytest.LogCaptureFixture
    ) -> None:
        """Test a failing callback does not break the scheduler."""

        def boom(k: QueryKey) -> None:
            raise RuntimeError("boom")

        scheduler.schedule_gc(key, 0.0, boom)
        await asyncio.sleep(0.02)

        assert "Error in expiry timer callback" in caplog.text
        assert not scheduler.has_gc(key)

    @pytest.mark.asyncio
    async def test_shutdown_cancels_everything(self, scheduler: ExpiryScheduler) -> None:
        """Test shutdown cancels all pending timers."""
        fired: list[QueryKey] = []
        for i in range(5):
            scheduler.schedule_gc(QueryKey("item", i), 0.02, fired.append)

        await scheduler.shutdown()
        await asyncio.sleep(0.05)
        assert fired == []
