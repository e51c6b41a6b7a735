"""Fetch orchestration: one producer invocation in flight per key.

The orchestrator decides when a key is fetched, coalesces concurrent requests
into the single in-flight fetch of that key, applies the retry policy to
failures and writes every settlement to the store. Consumers learn about
transitions through the events it publishes.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import itertools
from collections.abc import Callable, Coroutine
from dataclasses import replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from duck_query.application.error_handling import RetryPolicy
from duck_query.domain.entities import CacheEntry, Producer, QueryKey
from duck_query.domain.enums import FetchStatus, RetryState
from duck_query.domain.events import QueryEvent, QueryEventHandler, QueryEventType
from duck_query.domain.exceptions import (
    InvalidBinding,
    MaxRetriesExceeded,
    MirrorError,
    ProducerFailure,
)
from duck_query.infrastructure.logging import get_logger

if TYPE_CHECKING:
    from duck_query.application.models import QueryOptions
    from duck_query.domain.interfaces import Clock, DurableMirror, MirrorRecord
    from duck_query.infrastructure.cache import QueryStore
    from duck_query.infrastructure.monitoring import QueryMetricsCollector

logger = get_logger(__name__)

DataEqual = Callable[[Any, Any], bool]

UNSET: Any = object()


def default_data_equal(a: Any, b: Any) -> bool:
    """Identity or ``==`` equality; values that cannot be compared are unequal."""
    if a is b:
        return True
    try:
        return bool(a == b)
    except Exception:
        return False


class FetchOrchestrator:
    """Coordinates fetching, retrying and settling of cache entries.

    Guarantees:
    - at most one producer call is outstanding per key; callers arriving while
      it runs receive the same future
    - the in-flight future is stored before the first suspension point, so two
      near-simultaneous callers can never both start a fetch
    - producer failures are captured on the entry, never raised to callers
    - a settlement for an entry evicted in the meantime is dropped
    """

    def __init__(
        self,
        store: QueryStore,
        clock: Clock,
        *,
        metrics: QueryMetricsCollector | None = None,
        mirror: DurableMirror | None = None,
        is_online: Callable[[], bool] | None = None,
        is_data_equal: DataEqual | None = None,
        default_retry_policy: RetryPolicy | None = None,
        default_gc_time: float = 300_000.0,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            store: Store owning every cache entry
            clock: Time source for timestamps and retry delays
            metrics: Optional metrics collector
            mirror: Optional durable mirror fed on settlement and eviction
            is_online: Returns False while the host is offline
            is_data_equal: Comparator used to keep the previous result object
                when a refetch produced an equal value
            default_retry_policy: Policy for keys fetched without one
            default_gc_time: Retention (ms) for entries created without one
        """
        self._store = store
        self._clock = clock
        self._metrics = metrics
        self._mirror = mirror
        self._is_online = is_online or (lambda: True)
        self._is_data_equal = is_data_equal or default_data_equal
        self._default_retry_policy = default_retry_policy or RetryPolicy()
        self._default_gc_time = default_gc_time

        self._entry_ids = itertools.count(1)
        self._retry_tasks: dict[QueryKey, asyncio.Task[None]] = {}
        self._fetch_tasks: set[asyncio.Task[CacheEntry]] = set()
        self._background_tasks: set[asyncio.Task[Any]] = set()
        self._event_handlers: list[QueryEventHandler] = []

    # Events

    def subscribe_to_events(self, handler: QueryEventHandler) -> None:
        """Subscribe a synchronous handler to every entry transition."""
        self._event_handlers.append(handler)

    def unsubscribe_from_events(self, handler: QueryEventHandler) -> None:
        """Remove a previously subscribed handler."""
        self._event_handlers = [h for h in self._event_handlers if h != handler]

    def _emit_event(
        self,
        event_type: QueryEventType,
        key: QueryKey,
        entry: CacheEntry | None,
        **metadata: Any,
    ) -> None:
        event = QueryEvent(
            event_type=event_type,
            key=key,
            timestamp=datetime.now(UTC),
            entry=entry,
            metadata=metadata or None,
        )
        for handler in list(self._event_handlers):
            try:
                handler(event)
            except Exception as e:
                logger.error(
                    "Error in query event handler",
                    exc_info=e,
                    extra={
                        "event_type": event_type.value,
                        "key": str(key),
                        "handler": getattr(handler, "__name__", str(handler)),
                    },
                )

    # Fetch decision

    def should_fetch(self, key: QueryKey, options: QueryOptions) -> bool:
        """Decide whether a binding request needs a fetch.

        Fetches when the key has no entry at all, or when the binding is
        enabled and the entry is older than the binding's ``stale_time``.
        A key whose retries are exhausted is never fetched automatically.
        """
        entry = self._store.get(key)
        if entry is None:
            return True
        if entry.retry_state == RetryState.FAILED:
            return False
        return options.enabled and entry.is_stale(options.stale_time, self._clock.now())

    # Fetching

    def ensure_fetch(
        self,
        key: QueryKey,
        producer: Producer | None = None,
        args: Any = UNSET,
        *,
        retry_policy: RetryPolicy | None = None,
        gc_time: float | None = None,
        reset_retries: bool = False,
    ) -> asyncio.Future[CacheEntry] | None:
        """Start a fetch for a key, or join the one already running.

        Args:
            key: Key to fetch
            producer: Producer to use; defaults to the one cached on the entry
            args: Producer payload; defaults to the cached args, then the key's
                params
            retry_policy: Retry policy to remember for this key
            gc_time: Requested retention in ms; the entry keeps the largest
            reset_retries: Clear the retry count (manual refetch/invalidation)

        Returns:
            Future resolving to the settled entry, or None when the fetch was
            paused because the host is offline

        Raises:
            InvalidBinding: If no producer is given and none is cached
        """
        entry = self._store.get(key)

        if entry is not None and entry.in_flight is not None:
            if reset_retries and entry.retry_count:
                self._store.put(key, replace(entry, retry_count=0))
            if self._metrics:
                self._metrics.record_coalesced()
            logger.debug("Joined in-flight fetch", extra={"key": str(key)})
            return entry.in_flight

        producer = producer or (entry.producer if entry is not None else None)
        if producer is None:
            raise InvalidBinding(key, "no producer given and none cached")

        if entry is None:
            entry = self._new_entry(key, gc_time)
        elif gc_time is not None and gc_time > entry.gc_time:
            entry = replace(entry, gc_time=gc_time)

        if args is UNSET:
            args = entry.args if entry.producer is not None else key.params

        policy = retry_policy or entry.retry_policy or self._default_retry_policy
        retry_count = 0 if reset_retries else entry.retry_count

        # A fetch started now supersedes any scheduled retry
        self._cancel_retry(key)

        if not self._is_online():
            paused = replace(
                entry,
                producer=producer,
                args=args,
                retry_policy=policy,
                retry_count=retry_count,
                retry_state=RetryState.IDLE,
                fetch_status=FetchStatus.PAUSED,
            )
            self._store.put(key, paused)
            logger.info("Fetch paused while offline", extra={"key": str(key)})
            self._emit_event(QueryEventType.FETCH_PAUSED, key, paused)
            return None

        task = asyncio.get_running_loop().create_task(
            self._run_fetch(key, entry.entry_id, producer, args)
        )
        started = replace(
            entry,
            in_flight=task,
            producer=producer,
            args=args,
            retry_policy=policy,
            retry_count=retry_count,
            retry_state=RetryState.FETCHING,
            fetch_status=FetchStatus.FETCHING,
        )
        self._store.put(key, started)
        self._fetch_tasks.add(task)
        task.add_done_callback(self._fetch_tasks.discard)

        if self._metrics:
            self._metrics.record_fetch_started()
        logger.debug(
            "Fetch started",
            extra={"key": str(key), "retry_count": retry_count},
        )
        self._emit_event(QueryEventType.FETCH_STARTED, key, started)
        return task

    def refetch(self, key: QueryKey) -> asyncio.Future[CacheEntry] | None:
        """Force a fetch regardless of staleness.

        Clears a terminal failure and any pending retry, and restarts the retry
        budget from zero.

        Raises:
            InvalidBinding: If the key is unknown or has no cached producer
        """
        entry = self._store.get(key)
        if entry is None or entry.producer is None:
            raise InvalidBinding(key, "query is not cached")
        return self.ensure_fetch(key, reset_retries=True)

    def remember(
        self,
        key: QueryKey,
        producer: Producer | None,
        args: Any,
        *,
        retry_policy: RetryPolicy | None = None,
        gc_time: float | None = None,
    ) -> CacheEntry | None:
        """Record a binding's producer on an existing entry without fetching.

        A producer is only filled in where the entry has none, so invalidation
        keeps re-running the producer that made the cached result.
        """
        entry = self._store.get(key)
        if entry is None:
            return None
        updated = entry
        if producer is not None and entry.producer is None:
            updated = replace(updated, producer=producer, args=args)
        if retry_policy is not None and entry.retry_policy is None:
            updated = replace(updated, retry_policy=retry_policy)
        if gc_time is not None and gc_time > entry.gc_time:
            updated = replace(updated, gc_time=gc_time)
        if updated is not entry:
            self._store.put(key, updated)
        return updated

    def is_retry_pending(self, key: QueryKey) -> bool:
        """Check if an automatic retry is scheduled for a key."""
        return key in self._retry_tasks

    async def _run_fetch(
        self,
        key: QueryKey,
        entry_id: int,
        producer: Producer,
        args: Any,
    ) -> CacheEntry:
        started_at = self._clock.now()
        try:
            value = producer(args)
            if inspect.isawaitable(value):
                value = await value
        except asyncio.CancelledError:
            self._abandon_fetch(key, entry_id)
            raise
        except Exception as e:
            return self._settle_failure(key, entry_id, e, started_at)
        return self._settle_success(key, entry_id, value, started_at)

    def _settle_success(
        self, key: QueryKey, entry_id: int, value: Any, started_at: float
    ) -> CacheEntry:
        now = self._clock.now()
        if self._metrics:
            self._metrics.record_fetch_settled("success", now - started_at)

        current = self._store.get(key)
        if current is None or current.entry_id != entry_id:
            return self._drop_settlement(key, entry_id, result=value, has_result=True)

        # Keep the previous object when nothing changed
        if current.has_result and self._is_data_equal(current.result, value):
            value = current.result

        settled = replace(
            current,
            in_flight=None,
            result=value,
            has_result=True,
            timestamp=now,
            updated_at=datetime.now(UTC),
            retry_count=0,
            retry_state=RetryState.IDLE,
            fetch_status=FetchStatus.IDLE,
            error=None,
            fetch_count=current.fetch_count + 1,
        )
        self._store.put(key, settled)

        logger.info(
            "Fetch succeeded",
            extra={"key": str(key), "duration_ms": round((now - started_at) * 1000, 3)},
        )
        self._emit_event(QueryEventType.FETCH_SUCCEEDED, key, settled)

        if self._mirror is not None:
            self._spawn(self._mirror_settle(key, settled))
        return settled

    def _settle_failure(
        self, key: QueryKey, entry_id: int, exc: Exception, started_at: float
    ) -> CacheEntry:
        if self._metrics:
            self._metrics.record_fetch_settled("failure", self._clock.now() - started_at)

        current = self._store.get(key)
        if current is None or current.entry_id != entry_id:
            return self._drop_settlement(key, entry_id, error=ProducerFailure(key, exc))

        policy = current.retry_policy or self._default_retry_policy
        failure = ProducerFailure(key, exc, current.retry_count)
        # Stale-while-error: result and timestamp stay untouched
        base = replace(
            current,
            in_flight=None,
            fetch_status=FetchStatus.IDLE,
            fetch_count=current.fetch_count + 1,
        )

        if policy.should_retry(current.retry_count):
            attempt = current.retry_count + 1
            delay = policy.delay_for(attempt)
            failed = replace(
                base,
                error=failure,
                retry_count=attempt,
                retry_state=RetryState.RETRY_PENDING,
            )
            self._store.put(key, failed)
            self._schedule_retry(key, current.entry_id, delay)
            if self._metrics:
                self._metrics.record_retry()

            logger.warning(
                f"Fetch failed for {key}, retry {attempt} in {delay:.3f}s",
                extra={
                    "key": str(key),
                    "attempt": attempt,
                    "max_retries": policy.max_retries,
                    "delay": delay,
                    "error": str(exc),
                },
            )
            self._emit_event(
                QueryEventType.FETCH_FAILED, key, failed, terminal=False, retry_delay=delay
            )
            return failed

        error = (
            MaxRetriesExceeded(key, current.retry_count, exc)
            if policy.max_retries != 0
            else failure
        )
        failed = replace(base, error=error, retry_state=RetryState.FAILED)
        self._store.put(key, failed)

        logger.error(
            f"Fetch failed for {key}, giving up",
            extra={
                "key": str(key),
                "retry_count": current.retry_count,
                "error": str(exc),
                "error_type": type(exc).__name__,
            },
        )
        self._emit_event(QueryEventType.FETCH_FAILED, key, failed, terminal=True)
        return failed

    def _drop_settlement(self, key: QueryKey, entry_id: int, **fields: Any) -> CacheEntry:
        orphan = CacheEntry(key=key, entry_id=entry_id, **fields)
        if self._metrics:
            self._metrics.record_dropped_settlement()
        logger.info(
            "Dropped settlement for evicted query",
            extra={"key": str(key), "entry_id": entry_id},
        )
        self._emit_event(QueryEventType.SETTLEMENT_DROPPED, key, orphan)
        return orphan

    def _abandon_fetch(self, key: QueryKey, entry_id: int) -> None:
        current = self._store.get(key)
        if current is None or current.entry_id != entry_id:
            return
        if current.in_flight is not asyncio.current_task():
            return
        self._store.put(
            key,
            replace(
                current,
                in_flight=None,
                fetch_status=FetchStatus.IDLE,
                retry_state=RetryState.IDLE,
            ),
        )
        logger.debug("Fetch cancelled", extra={"key": str(key)})

    # Retries

    def _schedule_retry(self, key: QueryKey, entry_id: int, delay: float) -> None:
        self._cancel_retry(key)
        self._retry_tasks[key] = asyncio.create_task(self._retry_after(key, entry_id, delay))

    def _cancel_retry(self, key: QueryKey) -> None:
        task = self._retry_tasks.pop(key, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _retry_after(self, key: QueryKey, entry_id: int, delay: float) -> None:
        await self._clock.sleep(delay)

        if self._retry_tasks.get(key) is asyncio.current_task():
            del self._retry_tasks[key]

        entry = self._store.get(key)
        if (
            entry is None
            or entry.entry_id != entry_id
            or entry.retry_state != RetryState.RETRY_PENDING
            or entry.in_flight is not None
        ):
            return

        logger.info(
            "Retrying fetch",
            extra={"key": str(key), "attempt": entry.retry_count},
        )
        self.ensure_fetch(key)

    # Direct writes

    def set_data(self, key: QueryKey, value: Any) -> CacheEntry:
        """Write a value as if a fetch had just produced it."""
        entry = self._store.get(key) or self._new_entry(key, None)
        self._cancel_retry(key)
        updated = replace(
            entry,
            result=value,
            has_result=True,
            timestamp=self._clock.now(),
            updated_at=datetime.now(UTC),
            error=None,
            retry_count=0,
            retry_state=RetryState.FETCHING if entry.in_flight is not None else RetryState.IDLE,
        )
        self._store.put(key, updated)
        logger.debug("Query data set", extra={"key": str(key)})
        self._emit_event(QueryEventType.DATA_SET, key, updated, source="manual")

        if self._mirror is not None:
            self._spawn(self._mirror_settle(key, updated))
        return updated

    async def load_from_mirror(self, key: QueryKey) -> CacheEntry | None:
        """Seed a key from the durable mirror when it still has no result.

        Mirrored values carry no timestamp, so they are served as stale data
        until a fetch lands.

        Returns:
            The seeded entry, or None if nothing was seeded
        """
        if self._mirror is None:
            return None
        try:
            record = await self._mirror.on_miss(key)
        except Exception as e:
            error = MirrorError("load", key, str(e))
            logger.warning(error.message, exc_info=e, extra={"key": str(key)})
            return None
        if record is None:
            return None
        return self._seed(key, record)

    def _seed(self, key: QueryKey, record: MirrorRecord) -> CacheEntry | None:
        entry = self._store.get(key)
        if entry is not None and entry.has_result:
            return None
        entry = entry or self._new_entry(key, None)
        seeded = replace(
            entry,
            result=record.value,
            has_result=True,
            updated_at=record.updated_at,
        )
        self._store.put(key, seeded)
        logger.info("Query seeded from durable mirror", extra={"key": str(key)})
        self._emit_event(QueryEventType.DATA_SET, key, seeded, source="mirror")
        return seeded

    # Eviction

    def evict(self, key: QueryKey, reason: str = "removed") -> CacheEntry | None:
        """Remove a key's entry from the store.

        An in-flight fetch keeps running but its settlement will be dropped.

        Args:
            key: Key to evict
            reason: Why the entry is evicted (gc, removed, cleared)

        Returns:
            The evicted entry, or None if the key was absent
        """
        self._cancel_retry(key)
        entry = self._store.remove(key)
        if entry is None:
            return None

        if self._metrics:
            self._metrics.record_eviction(reason)
            self._metrics.set_entry_count(len(self._store))
        logger.info("Cache entry evicted", extra={"key": str(key), "reason": reason})
        self._emit_event(QueryEventType.ENTRY_EVICTED, key, entry, reason=reason)

        if self._mirror is not None:
            self._spawn(self._mirror_evict(key))
        return entry

    def clear(self) -> None:
        """Evict every entry."""
        for key in self._store.keys():
            self.evict(key, reason="cleared")

    async def shutdown(self) -> None:
        """Cancel retries, in-flight fetches and background mirror writes."""
        tasks: list[asyncio.Task[Any]] = [
            *self._retry_tasks.values(),
            *self._fetch_tasks,
            *self._background_tasks,
        ]
        self._retry_tasks.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

        if tasks:
            logger.info("Fetch orchestrator stopped", extra={"cancelled_tasks": len(tasks)})

    # Helpers

    def _new_entry(self, key: QueryKey, gc_time: float | None) -> CacheEntry:
        entry = CacheEntry(
            key=key,
            entry_id=next(self._entry_ids),
            gc_time=gc_time if gc_time is not None else self._default_gc_time,
        )
        self._store.put(key, entry)
        if self._metrics:
            self._metrics.set_entry_count(len(self._store))
        logger.debug("Cache entry created", extra={"key": str(key)})
        return entry

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _mirror_settle(self, key: QueryKey, entry: CacheEntry) -> None:
        assert self._mirror is not None
        try:
            await self._mirror.on_settle(key, entry)
        except Exception as e:
            error = MirrorError("save", key, str(e))
            logger.warning(error.message, exc_info=e, extra={"key": str(key)})

    async def _mirror_evict(self, key: QueryKey) -> None:
        assert self._mirror is not None
        try:
            await self._mirror.on_evict(key)
        except Exception as e:
            error = MirrorError("delete", key, str(e))
            logger.warning(error.message, exc_info=e, extra={"key": str(key)})
