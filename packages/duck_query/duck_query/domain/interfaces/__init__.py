"""Domain interfaces for the query engine.

This module contains abstract interfaces for the collaborators the engine
consumes but does not implement itself: time and durable storage.
"""

from __future__ import annotations

from .clock import Clock
from .durable_mirror import DurableMirror, MirrorRecord

__all__ = ["Clock", "DurableMirror", "MirrorRecord"]
