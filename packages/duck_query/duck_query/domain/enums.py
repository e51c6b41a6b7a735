"""Domain enums for the query engine."""

from __future__ import annotations

from enum import Enum


class FetchStatus(Enum):
    """Whether a producer call is currently running for a key."""

    IDLE = "idle"
    FETCHING = "fetching"
    PAUSED = "paused"  # A fetch was wanted while offline


class RetryState(Enum):
    """Retry state machine of a key."""

    IDLE = "idle"
    FETCHING = "fetching"
    RETRY_PENDING = "retry_pending"
    FAILED = "failed"  # Terminal until a manual refetch or invalidation
