"""Query client: the public entry point of the engine."""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Sequence
from typing import Any

from duck_query.application.error_handling import RetryPolicy
from duck_query.application.models import QueryOptions
from duck_query.application.services import (
    UNSET,
    ConsumerHandle,
    ExpiryScheduler,
    FetchOrchestrator,
    NotificationHub,
    StateListener,
)
from duck_query.application.services.fetch_orchestrator import DataEqual
from duck_query.config import QueryClientConfig, get_config
from duck_query.domain.entities import CacheEntry, Producer, QueryKey
from duck_query.domain.interfaces import Clock, DurableMirror
from duck_query.infrastructure.cache import QueryStore
from duck_query.infrastructure.clock import SystemClock
from duck_query.infrastructure.logging import get_logger
from duck_query.infrastructure.monitoring import QueryMetricsCollector

logger = get_logger(__name__)

KeyLike = QueryKey | str | Sequence[Any]


class QueryClient:
    """Cache and fetch orchestration for key-addressed async resources.

    One client owns one store. Construct it per application (or per test) and
    close it when done; nothing is kept in module-level state.

    Example:
        async with QueryClient() as client:
            handle = client.bind(("todos", {"done": False}), fetch_todos)
            ...
            await client.invalidate(["todos"])
    """

    def __init__(
        self,
        config: QueryClientConfig | None = None,
        *,
        clock: Clock | None = None,
        mirror: DurableMirror | None = None,
        metrics: QueryMetricsCollector | None = None,
        is_data_equal: DataEqual | None = None,
        name: str | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            config: Configuration, defaults to the environment-derived one
            clock: Time source, defaults to the event loop clock
            mirror: Optional durable mirror for offline reads
            metrics: Metrics collector, created from config when omitted
            is_data_equal: Value comparator used to suppress redundant
                notifications
            name: Client name used in logs and metric labels
        """
        self.config = config or get_config()
        self.name = name or self.config.client_name
        self._clock = clock or SystemClock()
        self._online = True
        self._visible = True
        self._closed = False

        if metrics is None and self.config.metrics.enabled:
            metrics = QueryMetricsCollector(self.name, namespace=self.config.metrics.namespace)
        self.metrics = metrics

        defaults = self.config.defaults
        self.store = QueryStore()
        self._scheduler = ExpiryScheduler(self._clock)
        self._orchestrator = FetchOrchestrator(
            self.store,
            self._clock,
            metrics=metrics,
            mirror=mirror,
            is_online=lambda: self._online,
            is_data_equal=is_data_equal,
            default_retry_policy=RetryPolicy(
                retry=defaults.retry,
                retry_delay=defaults.retry_delay,
                strategy=defaults.retry_strategy,
                max_retry_delay=defaults.max_retry_delay,
            ),
            default_gc_time=defaults.gc_time,
        )
        self._hub = NotificationHub(
            self.store,
            self._orchestrator,
            self._scheduler,
            self._clock,
            metrics=metrics,
            is_data_equal=is_data_equal,
        )

        logger.info("Query client created", extra={"client": self.name})

    async def __aenter__(self) -> QueryClient:
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()

    @property
    def is_online(self) -> bool:
        """Whether producers may currently be called."""
        return self._online

    @property
    def is_closed(self) -> bool:
        """Check if the client has been closed."""
        return self._closed

    def default_options(self, **overrides: Any) -> QueryOptions:
        """Build binding options from the configured defaults.

        Args:
            **overrides: Option values replacing the defaults

        Returns:
            Validated options
        """
        defaults = self.config.defaults
        values: dict[str, Any] = {
            "stale_time": defaults.stale_time,
            "gc_time": defaults.gc_time,
            "retry": defaults.retry,
            "retry_delay": defaults.retry_delay,
            "retry_strategy": defaults.retry_strategy,
            "max_retry_delay": defaults.max_retry_delay,
            "refetch_on_window_focus": defaults.refetch_on_window_focus,
            "refetch_on_reconnect": defaults.refetch_on_reconnect,
            "refetch_interval": defaults.refetch_interval,
        }
        values.update(overrides)
        return QueryOptions(**values)

    # Bindings

    def bind(
        self,
        key: KeyLike,
        producer: Producer | None = None,
        args: Any = UNSET,
        options: QueryOptions | None = None,
        listener: StateListener | None = None,
        **overrides: Any,
    ) -> ConsumerHandle:
        """Bind a consumer to a key.

        The fetch decision runs immediately: a missing key is fetched, a stale
        one is refetched when the binding is enabled, a fresh one is served
        from cache.

        Args:
            key: Query key, bare name or ``(name, params)``
            producer: Async or sync callable taking ``args``
            args: Producer payload, defaults to the key's params
            options: Binding options, defaults to the configured ones
            listener: Called with a copy of the consumer state on every change
            **overrides: Individual option overrides

        Returns:
            Handle exposing ``state``, ``refetch()`` and ``unbind()``

        Raises:
            InvalidBinding: If no producer is given and none is cached
        """
        self._check_open()
        query_key = QueryKey.of(key)
        if args is UNSET and producer is not None:
            args = query_key.params
        return self._hub.bind(
            query_key,
            producer,
            args,
            self._resolve_options(options, overrides),
            listener,
        )

    def unbind(self, handle: ConsumerHandle) -> None:
        """Release a binding."""
        self._hub.unbind(handle)

    # Fetching

    def ensure_fetch(
        self,
        key: KeyLike,
        producer: Producer | None = None,
        args: Any = UNSET,
        options: QueryOptions | None = None,
    ) -> asyncio.Future[CacheEntry] | None:
        """Start a fetch for a key or join the one in flight.

        A manual fetch restarts the retry budget, also after a terminal failure.

        Returns:
            Future resolving to the settled entry, or None while offline
        """
        self._check_open()
        return self._orchestrator.ensure_fetch(
            QueryKey.of(key),
            producer,
            args,
            retry_policy=options.retry_policy() if options is not None else None,
            gc_time=options.gc_time if options is not None else None,
            reset_retries=True,
        )

    def refetch(self, key: KeyLike) -> asyncio.Future[CacheEntry] | None:
        """Force a fetch of a cached key regardless of staleness.

        Raises:
            InvalidBinding: If the key has no cached producer
        """
        self._check_open()
        return self._orchestrator.refetch(QueryKey.of(key))

    async def fetch_query(
        self,
        key: KeyLike,
        producer: Producer | None = None,
        args: Any = UNSET,
        options: QueryOptions | None = None,
        **overrides: Any,
    ) -> CacheEntry | None:
        """Fetch a key unless cached data is still fresh, and wait for it.

        A failure is returned on the entry, never raised. With retries left,
        the returned entry is the one waiting for its first retry.

        Returns:
            The settled entry, or the paused entry while offline
        """
        self._check_open()
        query_key = QueryKey.of(key)
        resolved = self._resolve_options(options, overrides)

        entry = self.store.get(query_key)
        if entry is not None and entry.in_flight is None:
            if not entry.is_stale(resolved.stale_time, self._clock.now()):
                return entry

        future = self._orchestrator.ensure_fetch(
            query_key,
            producer,
            args,
            retry_policy=resolved.retry_policy(),
            gc_time=resolved.gc_time,
            reset_retries=True,
        )
        if future is None:
            return self.store.get(query_key)
        await asyncio.wait({future})
        if future.cancelled():
            return self.store.get(query_key)
        return future.result()

    async def invalidate(self, keys: KeyLike | Iterable[KeyLike]) -> list[CacheEntry]:
        """Refetch every key matching the selectors and broadcast the results.

        A ``str`` selector matches every cached key with that primary name.
        A single ``(name, params)`` pair is one key when ``params`` is not a
        string; any other sequence is a list of selectors, so a key with string
        params is passed as a ``QueryKey``. Keys without a cached producer are
        skipped.

        Args:
            keys: A selector or an iterable of selectors

        Returns:
            The entries produced by the forced fetches
        """
        self._check_open()
        if isinstance(keys, str | QueryKey) or _is_key_pair(keys):
            keys = [keys]

        selectors: list[QueryKey | str] = [
            k if isinstance(k, str | QueryKey) else QueryKey.of(k) for k in keys
        ]
        return await self._hub.invalidate(selectors)

    # Direct cache access

    def get_entry(self, key: KeyLike) -> CacheEntry | None:
        """Get the cache entry of a key."""
        return self.store.get(QueryKey.of(key))

    def get_query_data(self, key: KeyLike) -> Any:
        """Get the cached value of a key, or None if it has none."""
        entry = self.get_entry(key)
        if entry is None or not entry.has_result:
            return None
        return entry.result

    def set_query_data(self, key: KeyLike, value: Any) -> CacheEntry:
        """Write a value into the cache and broadcast it like a fetch result."""
        self._check_open()
        return self._orchestrator.set_data(QueryKey.of(key), value)

    def remove_query(self, key: KeyLike) -> bool:
        """Evict a key. Bound consumers fall back to their initial value.

        Returns:
            True if an entry was removed
        """
        return self._orchestrator.evict(QueryKey.of(key), reason="removed") is not None

    def clear(self) -> None:
        """Evict every key."""
        self._orchestrator.clear()

    # Environment triggers

    def notify_focus(self, visible: bool) -> int:
        """Report application visibility.

        On the hidden to visible edge, bound stale keys are refetched.

        Returns:
            Number of keys a fetch was requested for
        """
        became_visible = visible and not self._visible
        self._visible = visible
        if not became_visible or not self._online or self._closed:
            return 0
        logger.debug("Application became visible", extra={"client": self.name})
        return self._hub.refetch_stale("focus")

    def notify_online(self, online: bool) -> int:
        """Report network connectivity.

        While offline, fetches are paused. On the offline to online edge,
        paused keys and bound stale keys are refetched.

        Returns:
            Number of keys a fetch was requested for
        """
        reconnected = online and not self._online
        self._online = online
        if not online:
            logger.info("Client went offline", extra={"client": self.name})
        if not reconnected or self._closed:
            return 0
        logger.info("Client back online", extra={"client": self.name})
        return self._hub.refetch_stale("reconnect")

    # Introspection

    def consumers(self, key: KeyLike) -> list[ConsumerHandle]:
        """Active bindings of a key."""
        return self._hub.consumers(QueryKey.of(key))

    @property
    def stats(self) -> dict[str, Any]:
        """Store statistics, plus metric counters when metrics are enabled."""
        stats = {"client": self.name, "store": self.store.stats}
        if self.metrics is not None:
            stats["metrics"] = self.metrics.snapshot()
        return stats

    async def close(self) -> None:
        """Cancel every timer, retry and fetch, then empty the store."""
        if self._closed:
            return
        self._closed = True

        await self._hub.shutdown()
        await self._scheduler.shutdown()
        await self._orchestrator.shutdown()
        self.store.clear()

        logger.info("Query client closed", extra={"client": self.name})

    def _resolve_options(
        self, options: QueryOptions | None, overrides: dict[str, Any]
    ) -> QueryOptions:
        if options is None:
            return self.default_options(**overrides)
        if not overrides:
            return options
        return QueryOptions(**{**dict(options), **overrides})

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError("Query client is closed")


def _is_key_pair(value: Any) -> bool:
    """Check if a selector argument is one ``(name, params)`` key."""
    return (
        isinstance(value, Sequence)
        and not isinstance(value, str)
        and len(value) == 2
        and isinstance(value[0], str)
        and not isinstance(value[1], str | QueryKey)
    )
