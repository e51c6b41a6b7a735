"""Monitoring infrastructure for the query engine."""

from __future__ import annotations

from .metrics import QueryMetricsCollector

__all__ = ["QueryMetricsCollector"]
