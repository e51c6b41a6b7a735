"""Consumer bindings and state broadcast.

The hub keeps track of which consumers are bound to which key. Every entry
transition published by the fetch orchestrator is turned into a fresh
``ConsumerState`` per binding and delivered to that binding's listener. The hub
also owns the per-key staleness and GC timers, the invalidation protocol and
the focus/online triggers.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING, Any

from duck_query.domain.entities import CacheEntry, ConsumerState, Producer, QueryKey
from duck_query.domain.enums import FetchStatus, RetryState
from duck_query.domain.events import QueryEvent, QueryEventType
from duck_query.domain.exceptions import InvalidBinding
from duck_query.infrastructure.logging import get_logger

from .fetch_orchestrator import DataEqual, default_data_equal

if TYPE_CHECKING:
    from duck_query.application.models import QueryOptions
    from duck_query.domain.interfaces import Clock
    from duck_query.infrastructure.cache import QueryStore
    from duck_query.infrastructure.monitoring import QueryMetricsCollector

    from .expiry_scheduler import ExpiryScheduler
    from .fetch_orchestrator import FetchOrchestrator

logger = get_logger(__name__)

StateListener = Callable[[ConsumerState], None]

# Timers may wake marginally before their deadline
_TIMER_SLACK = 0.001

_COMPARED_FIELDS = tuple(
    f.name for f in dataclasses.fields(ConsumerState) if f.name not in ("value", "error")
)


class ConsumerHandle:
    """Opaque handle of one consumer bound to one key."""

    def __init__(
        self,
        hub: NotificationHub,
        key: QueryKey,
        options: QueryOptions,
        producer: Producer | None,
        args: Any,
        listener: StateListener | None = None,
    ) -> None:
        self.key = key
        self.options = options
        self._hub = hub
        self._producer = producer
        self._args = args
        self._listener = listener
        self._state = ConsumerState.initial(options.initial_value)
        self._active = True
        self._poll_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> ConsumerState:
        """Copy of the consumer's current state."""
        return dataclasses.replace(self._state)

    @property
    def active(self) -> bool:
        """Whether the handle is still bound."""
        return self._active

    def refetch(self) -> asyncio.Future[CacheEntry] | None:
        """Force a fetch of the bound key.

        Returns:
            Future resolving to the settled entry, or None while offline
        """
        return self._hub.refetch(self)

    def unbind(self) -> None:
        """Release the binding."""
        self._hub.unbind(self)

    def _apply(self, state: ConsumerState, is_data_equal: DataEqual) -> bool:
        previous = self._state
        same_value = is_data_equal(previous.value, state.value)
        if same_value:
            state.value = previous.value

        changed = (
            not same_value
            or previous.error is not state.error
            or any(getattr(previous, f) != getattr(state, f) for f in _COMPARED_FIELDS)
        )
        if not changed:
            return False

        self._state = state
        if self._listener is not None:
            try:
                self._listener(dataclasses.replace(state))
            except Exception as e:
                logger.error(
                    "Error in consumer listener",
                    exc_info=e,
                    extra={"key": str(self.key), "error": str(e)},
                )
        return True

    def __repr__(self) -> str:
        return f"ConsumerHandle(key={self.key!s}, active={self._active})"


class NotificationHub:
    """Tracks bindings per key and delivers state transitions to them.

    Every binding of a key receives transitions in the order the orchestrator
    publishes them, which is the order fetches settle.
    """

    def __init__(
        self,
        store: QueryStore,
        orchestrator: FetchOrchestrator,
        scheduler: ExpiryScheduler,
        clock: Clock,
        *,
        metrics: QueryMetricsCollector | None = None,
        is_data_equal: DataEqual | None = None,
    ) -> None:
        """Initialize the hub.

        Args:
            store: Store owning every cache entry
            orchestrator: Orchestrator whose events are broadcast
            scheduler: Staleness and GC timers
            clock: Time source used to judge staleness
            metrics: Optional metrics collector
            is_data_equal: Comparator deciding if a value changed
        """
        self._store = store
        self._orchestrator = orchestrator
        self._scheduler = scheduler
        self._clock = clock
        self._metrics = metrics
        self._is_data_equal = is_data_equal or default_data_equal

        self._bindings: dict[QueryKey, list[ConsumerHandle]] = {}
        self._mirror_loads: set[asyncio.Task[Any]] = set()

        orchestrator.subscribe_to_events(self._handle_event)

    # Bindings

    def bind(
        self,
        key: QueryKey,
        producer: Producer | None,
        args: Any,
        options: QueryOptions,
        listener: StateListener | None = None,
    ) -> ConsumerHandle:
        """Register a consumer for a key and run the fetch decision.

        Args:
            key: Key to observe
            producer: Producer able to fetch the key; may be omitted when the
                key already has a cached producer
            args: Producer payload
            options: Binding options
            listener: Called with a state copy on every visible change

        Returns:
            Handle of the new binding

        Raises:
            InvalidBinding: If no producer is given and none is cached
        """
        entry = self._store.get(key)
        if producer is None and (entry is None or entry.producer is None):
            raise InvalidBinding(key, "no producer available")

        handle = ConsumerHandle(self, key, options, producer, args, listener)
        self._bindings.setdefault(key, []).append(handle)
        self._scheduler.cancel_gc(key)

        policy = options.retry_policy()
        if self._orchestrator.should_fetch(key, options):
            if self._metrics:
                self._metrics.record_cache_miss()
            self._orchestrator.ensure_fetch(
                key, producer, args, retry_policy=policy, gc_time=options.gc_time
            )
            if entry is None:
                self._load_from_mirror(key)
        else:
            self._orchestrator.remember(
                key, producer, args, retry_policy=policy, gc_time=options.gc_time
            )
            if self._metrics:
                self._metrics.record_cache_hit()
            logger.debug("Serving query from cache", extra={"key": str(key)})

        self._sync(handle, self._store.get(key), self._clock.now())
        self._schedule_stale(key)

        if options.refetch_interval > 0:
            handle._poll_task = asyncio.create_task(self._poll(handle))

        logger.debug(
            "Consumer bound",
            extra={"key": str(key), "consumers": len(self._bindings[key])},
        )
        return handle

    def unbind(self, handle: ConsumerHandle) -> None:
        """Release a binding. The entry itself is left to the GC timer."""
        if not handle._active:
            return
        handle._active = False
        if handle._poll_task is not None:
            handle._poll_task.cancel()
            handle._poll_task = None

        key = handle.key
        handles = self._bindings.get(key, [])
        if handle in handles:
            handles.remove(handle)
        if handles:
            self._schedule_stale(key)
        else:
            self._bindings.pop(key, None)
            self._scheduler.cancel_stale(key)
            self._schedule_gc(key)

        logger.debug("Consumer unbound", extra={"key": str(key), "consumers": len(handles)})

    def consumers(self, key: QueryKey) -> list[ConsumerHandle]:
        """Active handles bound to a key."""
        return list(self._bindings.get(key, []))

    def bound_keys(self) -> list[QueryKey]:
        """Keys with at least one active binding."""
        return list(self._bindings)

    # Fetch triggers

    def refetch(self, handle: ConsumerHandle) -> asyncio.Future[CacheEntry] | None:
        """Force a fetch on behalf of a binding."""
        if not handle._active:
            raise InvalidBinding(handle.key, "handle is no longer bound")
        entry = self._store.get(handle.key)
        if entry is not None and entry.producer is not None:
            return self._orchestrator.refetch(handle.key)
        if handle._producer is None:
            raise InvalidBinding(handle.key, "no producer available")
        return self._orchestrator.ensure_fetch(
            handle.key,
            handle._producer,
            handle._args,
            retry_policy=handle.options.retry_policy(),
            gc_time=handle.options.gc_time,
            reset_retries=True,
        )

    async def invalidate(self, selectors: Iterable[QueryKey | str]) -> list[CacheEntry]:
        """Refetch every matching key with its cached producer and args.

        Each key's retry count is cleared first. A fetch already running is
        allowed to settle, then a fresh one is started, so the new result
        reflects state after the invalidation. Keys without a cached producer
        are skipped.

        Args:
            selectors: Primary names (matching every key of that name) or keys

        Returns:
            Entries settled by the forced fetches
        """
        keys: list[QueryKey] = []
        for selector in selectors:
            if isinstance(selector, QueryKey):
                matched = [selector]
            else:
                matched = [entry.key for entry in self._store.find(selector)]
            for key in matched:
                if key not in keys:
                    keys.append(key)

        logger.info("Invalidating queries", extra={"keys": [str(k) for k in keys]})
        results = await asyncio.gather(*(self._invalidate_key(key) for key in keys))
        return [entry for entry in results if entry is not None]

    async def _invalidate_key(self, key: QueryKey) -> CacheEntry | None:
        entry = self._store.get(key)
        if entry is not None and entry.in_flight is not None:
            await _settled(entry.in_flight)

        try:
            future = self._orchestrator.refetch(key)
        except InvalidBinding as e:
            logger.info("Skipping invalidation", extra={"key": str(key), "reason": e.message})
            return None
        if future is None:
            return None
        return await _settled(future)

    def refetch_stale(self, trigger: str) -> int:
        """Re-run the fetch decision for bound stale keys after an edge event.

        Args:
            trigger: ``"focus"`` or ``"reconnect"``; a reconnect also resumes
                every paused key

        Returns:
            Number of keys a fetch was requested for
        """
        now = self._clock.now()
        candidates = dict.fromkeys(self._bindings)
        if trigger == "reconnect":
            for key in self._store.keys():
                entry = self._store.get(key)
                if entry is not None and entry.fetch_status == FetchStatus.PAUSED:
                    candidates[key] = None

        requested = 0
        for key in candidates:
            entry = self._store.get(key)
            paused = entry is not None and entry.fetch_status == FetchStatus.PAUSED
            if not paused and not self._wants_refresh(key, entry, trigger, now):
                continue
            try:
                if entry is None or entry.producer is None:
                    handle = self._bindings[key][0]
                    self.refetch(handle)
                else:
                    self._orchestrator.ensure_fetch(key)
            except InvalidBinding as e:
                logger.warning(
                    "Cannot refetch query", extra={"key": str(key), "reason": e.message}
                )
                continue
            requested += 1

        if requested:
            logger.info(
                "Refetching stale queries",
                extra={"trigger": trigger, "queries": requested},
            )
        return requested

    def _wants_refresh(
        self, key: QueryKey, entry: CacheEntry | None, trigger: str, now: float
    ) -> bool:
        if entry is not None and entry.retry_state == RetryState.FAILED:
            return False
        for handle in self._bindings.get(key, []):
            opted_in = (
                handle.options.refetch_on_window_focus
                if trigger == "focus"
                else handle.options.refetch_on_reconnect
            )
            if not opted_in or not handle.options.enabled:
                continue
            if entry is None or entry.is_stale(handle.options.stale_time, now):
                return True
        return False

    async def _poll(self, handle: ConsumerHandle) -> None:
        interval = handle.options.refetch_interval / 1000
        while handle._active:
            await self._clock.sleep(interval)
            if not handle._active:
                break
            try:
                self.refetch(handle)
            except InvalidBinding as e:
                logger.warning(
                    "Polling refetch failed",
                    extra={"key": str(handle.key), "reason": e.message},
                )

    def _load_from_mirror(self, key: QueryKey) -> None:
        task = asyncio.create_task(self._orchestrator.load_from_mirror(key))
        self._mirror_loads.add(task)
        task.add_done_callback(self._mirror_loads.discard)

    # Broadcast

    def _handle_event(self, event: QueryEvent) -> None:
        key = event.key
        if event.event_type == QueryEventType.SETTLEMENT_DROPPED:
            return

        if event.event_type == QueryEventType.ENTRY_EVICTED:
            self._scheduler.cancel(key)
            self._broadcast(key, None)
            return

        entry = self._store.get(key)
        self._broadcast(key, entry)
        self._schedule_stale(key)

        if not self._bindings.get(key) and (
            event.refreshes_data or not self._scheduler.has_gc(key)
        ):
            self._schedule_gc(key)

    def _broadcast(self, key: QueryKey, entry: CacheEntry | None) -> None:
        now = self._clock.now()
        for handle in list(self._bindings.get(key, [])):
            self._sync(handle, entry, now)

    def _sync(self, handle: ConsumerHandle, entry: CacheEntry | None, now: float) -> None:
        is_stale = entry is None or entry.is_stale(handle.options.stale_time, now)
        state = ConsumerState.from_entry(entry, is_stale, handle.options.initial_value)
        handle._apply(state, self._is_data_equal)

    # Timers

    def _schedule_stale(self, key: QueryKey) -> None:
        entry = self._store.get(key)
        handles = self._bindings.get(key, [])
        if entry is None or entry.timestamp is None or not handles:
            self._scheduler.cancel_stale(key)
            return

        now = self._clock.now()
        delays = [
            entry.timestamp + h.options.stale_time / 1000 - now
            for h in handles
            if not h._state.is_stale
        ]
        if not delays:
            self._scheduler.cancel_stale(key)
            return
        self._scheduler.schedule_stale(key, max(0.0, min(delays)), self._on_stale)

    def _on_stale(self, key: QueryKey) -> None:
        entry = self._store.get(key)
        if entry is None:
            return
        now = self._clock.now() + _TIMER_SLACK
        for handle in list(self._bindings.get(key, [])):
            self._sync(handle, entry, now)
        logger.debug("Query data became stale", extra={"key": str(key)})
        self._schedule_stale(key)

    def _schedule_gc(self, key: QueryKey) -> None:
        entry = self._store.get(key)
        if entry is None:
            return
        self._scheduler.schedule_gc(key, entry.gc_time / 1000, self._on_gc)

    def _on_gc(self, key: QueryKey) -> None:
        if self._bindings.get(key):
            return
        self._orchestrator.evict(key, reason="gc")

    async def shutdown(self) -> None:
        """Release every binding and stop polling and mirror loads."""
        self._orchestrator.unsubscribe_from_events(self._handle_event)
        tasks: list[asyncio.Task[Any]] = list(self._mirror_loads)
        for handles in self._bindings.values():
            for handle in handles:
                handle._active = False
                if handle._poll_task is not None:
                    tasks.append(handle._poll_task)
                    handle._poll_task = None
        self._bindings.clear()

        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task


async def _settled(future: asyncio.Future[CacheEntry]) -> CacheEntry | None:
    """Wait for a fetch without propagating its cancellation to it."""
    await asyncio.wait({future})
    if future.cancelled():
        return None
    return future.result()
