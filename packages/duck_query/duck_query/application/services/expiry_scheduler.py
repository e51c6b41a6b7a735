"""Per-key staleness and garbage-collection timers."""

from __future__ import annotations

import asyncio
import contextlib
import math
from collections.abc import Callable
from typing import TYPE_CHECKING

from duck_query.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from duck_query.domain.entities import QueryKey
    from duck_query.domain.interfaces import Clock

logger = get_logger(__name__)

TimerCallback = Callable[["QueryKey"], None]


class ExpiryScheduler:
    """Runs two independent timers per key.

    The staleness timer tells consumers their data aged past ``stale_time``;
    it never fetches. The GC timer asks for an unobserved entry to be evicted.
    Scheduling a timer for a key replaces the previous timer of the same kind.
    Timers sleep on the injected clock, so none of them blocks other keys.
    """

    def __init__(self, clock: Clock) -> None:
        """Initialize the scheduler.

        Args:
            clock: Time source the timers sleep on
        """
        self._clock = clock
        self._stale_timers: dict[QueryKey, asyncio.Task[None]] = {}
        self._gc_timers: dict[QueryKey, asyncio.Task[None]] = {}

    def schedule_stale(self, key: QueryKey, delay: float, callback: TimerCallback) -> None:
        """Fire ``callback(key)`` once ``delay`` seconds have passed.

        Args:
            key: Key the timer belongs to
            delay: Delay in seconds; infinite delays schedule nothing
            callback: Called with the key when the timer fires
        """
        self.cancel_stale(key)
        if math.isinf(delay):
            return
        self._stale_timers[key] = asyncio.create_task(
            self._fire_after(self._stale_timers, key, delay, callback, "stale")
        )

    def schedule_gc(self, key: QueryKey, delay: float, callback: TimerCallback) -> None:
        """Fire ``callback(key)`` after ``delay`` seconds to collect the entry.

        Args:
            key: Key the timer belongs to
            delay: Delay in seconds; infinite delays schedule nothing
            callback: Called with the key when the timer fires
        """
        self.cancel_gc(key)
        if math.isinf(delay):
            return
        self._gc_timers[key] = asyncio.create_task(
            self._fire_after(self._gc_timers, key, delay, callback, "gc")
        )

    def cancel_stale(self, key: QueryKey) -> None:
        """Cancel the staleness timer of a key."""
        task = self._stale_timers.pop(key, None)
        if task is not None:
            task.cancel()

    def cancel_gc(self, key: QueryKey) -> None:
        """Cancel the GC timer of a key."""
        task = self._gc_timers.pop(key, None)
        if task is not None:
            task.cancel()

    def cancel(self, key: QueryKey) -> None:
        """Cancel both timers of a key."""
        self.cancel_stale(key)
        self.cancel_gc(key)

    def has_stale(self, key: QueryKey) -> bool:
        """Check if a staleness timer is pending for a key."""
        return key in self._stale_timers

    def has_gc(self, key: QueryKey) -> bool:
        """Check if a GC timer is pending for a key."""
        return key in self._gc_timers

    async def shutdown(self) -> None:
        """Cancel every pending timer and wait for them to finish."""
        tasks = [*self._stale_timers.values(), *self._gc_timers.values()]
        self._stale_timers.clear()
        self._gc_timers.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

        if tasks:
            logger.debug("Cancelled expiry timers", extra={"count": len(tasks)})

    async def _fire_after(
        self,
        timers: dict[QueryKey, asyncio.Task[None]],
        key: QueryKey,
        delay: float,
        callback: TimerCallback,
        kind: str,
    ) -> None:
        await self._clock.sleep(delay)

        # Deregister before the callback so it may reschedule this timer
        if timers.get(key) is asyncio.current_task():
            del timers[key]

        try:
            callback(key)
        except Exception as e:
            logger.error(
                "Error in expiry timer callback",
                exc_info=e,
                extra={"key": str(key), "timer": kind, "error": str(e)},
            )
