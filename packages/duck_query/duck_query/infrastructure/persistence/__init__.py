"""Durable mirror implementations."""

from __future__ import annotations

from .memory_mirror import InMemoryMirror

__all__ = ["InMemoryMirror"]
