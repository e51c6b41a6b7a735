"""Application services for the query engine."""

from __future__ import annotations

from .expiry_scheduler import ExpiryScheduler
from .fetch_orchestrator import UNSET, FetchOrchestrator, default_data_equal
from .notification_hub import ConsumerHandle, NotificationHub, StateListener

__all__ = [
    "UNSET",
    "ConsumerHandle",
    "ExpiryScheduler",
    "FetchOrchestrator",
    "NotificationHub",
    "StateListener",
    "default_data_equal",
]
