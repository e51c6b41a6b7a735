"""Abstract clock used by every timer in the engine."""

from __future__ import annotations

from abc import ABC, abstractmethod


class Clock(ABC):
    """Time source injected into the engine.

    Keeping time behind an interface lets hosts (and tests) decide how time
    flows; the engine never reads the system clock directly.
    """

    @abstractmethod
    def now(self) -> float:
        """Return a monotonic timestamp in seconds."""
        ...

    @abstractmethod
    async def sleep(self, seconds: float) -> None:
        """Suspend the calling task for ``seconds``.

        Args:
            seconds: Delay in seconds, never negative
        """
        ...
