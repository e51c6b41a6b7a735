"""Clock backed by the running asyncio event loop."""

from __future__ import annotations

import asyncio
import time

from duck_query.domain.interfaces import Clock


class SystemClock(Clock):
    """Monotonic clock using the event loop's time and ``asyncio.sleep``."""

    def now(self) -> float:
        """Return the event loop time, or the monotonic clock outside a loop."""
        try:
            return asyncio.get_running_loop().time()
        except RuntimeError:
            return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        """Sleep on the event loop."""
        await asyncio.sleep(max(0.0, seconds))
