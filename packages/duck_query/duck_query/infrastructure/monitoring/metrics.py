"""Prometheus metrics for query fetching and caching."""

from __future__ import annotations

from typing import Any

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram

from duck_query.infrastructure.logging import get_logger

logger = get_logger(__name__)


class QueryMetricsCollector:
    """Collects fetch, cache and eviction metrics for one query client.

    Metrics are registered on a dedicated ``CollectorRegistry`` unless one is
    passed in, so several clients (or test runs) never collide on metric names.
    Expose ``registry`` through ``prometheus_client`` to scrape it.
    """

    def __init__(
        self,
        client_name: str = "default",
        registry: CollectorRegistry | None = None,
        namespace: str = "duck_query",
    ) -> None:
        """Initialize metrics collector.

        Args:
            client_name: Label identifying the query client
            registry: Registry to register metrics on
            namespace: Metric name prefix
        """
        self.client_name = client_name
        self.namespace = namespace
        self.registry = registry if registry is not None else CollectorRegistry()

        self._fetches_started = Counter(
            "fetches_started_total",
            "Total producer invocations",
            ["client"],
            namespace=namespace,
            registry=self.registry,
        )
        self._fetches = Counter(
            "fetches_total",
            "Total settled fetches by outcome",
            ["client", "outcome"],
            namespace=namespace,
            registry=self.registry,
        )
        self._coalesced = Counter(
            "fetches_coalesced_total",
            "Fetch requests that joined an in-flight fetch",
            ["client"],
            namespace=namespace,
            registry=self.registry,
        )
        self._hits = Counter(
            "cache_hits_total",
            "Bindings served from a fresh cache entry",
            ["client"],
            namespace=namespace,
            registry=self.registry,
        )
        self._misses = Counter(
            "cache_misses_total",
            "Bindings that found no cache entry",
            ["client"],
            namespace=namespace,
            registry=self.registry,
        )
        self._retries = Counter(
            "retries_total",
            "Automatic retries scheduled",
            ["client"],
            namespace=namespace,
            registry=self.registry,
        )
        self._evictions = Counter(
            "evictions_total",
            "Cache entries evicted",
            ["client", "reason"],
            namespace=namespace,
            registry=self.registry,
        )
        self._dropped = Counter(
            "settlements_dropped_total",
            "Settlements discarded because their entry was evicted",
            ["client"],
            namespace=namespace,
            registry=self.registry,
        )
        self._entries = Gauge(
            "cache_entries",
            "Current number of cache entries",
            ["client"],
            namespace=namespace,
            registry=self.registry,
        )
        self._duration = Histogram(
            "fetch_duration_seconds",
            "Producer call duration in seconds",
            ["client", "outcome"],
            namespace=namespace,
            registry=self.registry,
            buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        logger.debug(
            "Initialized QueryMetricsCollector",
            extra={"client": client_name, "namespace": namespace},
        )

    def record_fetch_started(self) -> None:
        """Record a producer invocation."""
        self._fetches_started.labels(client=self.client_name).inc()

    def record_fetch_settled(self, outcome: str, duration_seconds: float) -> None:
        """Record a settled fetch.

        Args:
            outcome: "success" or "failure"
            duration_seconds: Time the producer took
        """
        self._fetches.labels(client=self.client_name, outcome=outcome).inc()
        self._duration.labels(client=self.client_name, outcome=outcome).observe(duration_seconds)

    def record_coalesced(self) -> None:
        """Record a request that joined an in-flight fetch."""
        self._coalesced.labels(client=self.client_name).inc()

    def record_cache_hit(self) -> None:
        """Record a binding served from cache."""
        self._hits.labels(client=self.client_name).inc()

    def record_cache_miss(self) -> None:
        """Record a binding that found no entry."""
        self._misses.labels(client=self.client_name).inc()

    def record_retry(self) -> None:
        """Record a scheduled retry."""
        self._retries.labels(client=self.client_name).inc()

    def record_eviction(self, reason: str) -> None:
        """Record an eviction.

        Args:
            reason: Why the entry left the store (gc, removed, cleared)
        """
        self._evictions.labels(client=self.client_name, reason=reason).inc()

    def record_dropped_settlement(self) -> None:
        """Record a settlement for an evicted entry."""
        self._dropped.labels(client=self.client_name).inc()

    def set_entry_count(self, count: int) -> None:
        """Update the cache size gauge."""
        self._entries.labels(client=self.client_name).set(count)

    def sample(self, name: str, **labels: str) -> float:
        """Read a sample by its unprefixed name, 0.0 when never recorded."""
        value = self.registry.get_sample_value(
            f"{self.namespace}_{name}", {"client": self.client_name, **labels}
        )
        return value if value is not None else 0.0

    def snapshot(self) -> dict[str, Any]:
        """Get current metric values."""
        return {
            "fetches_started": self.sample("fetches_started_total"),
            "fetches_succeeded": self.sample("fetches_total", outcome="success"),
            "fetches_failed": self.sample("fetches_total", outcome="failure"),
            "fetches_coalesced": self.sample("fetches_coalesced_total"),
            "cache_hits": self.sample("cache_hits_total"),
            "cache_misses": self.sample("cache_misses_total"),
            "retries": self.sample("retries_total"),
            "evictions_gc": self.sample("evictions_total", reason="gc"),
            "settlements_dropped": self.sample("settlements_dropped_total"),
            "cache_entries": self.sample("cache_entries"),
        }
