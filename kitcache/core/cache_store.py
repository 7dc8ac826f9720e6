"""
Keyed cache store with staleness, eviction and in-flight fetch tracking.

``CacheStore`` is the single shared mutable resource of kitcache. Every other
component receives the same explicitly constructed instance; nothing in the
package keeps a module-level cache.

Entries are tagged with an ``EntryKind`` so scans (aggregates, sibling lookup)
filter by tag rather than by probing value shapes. Keys are tuples of segments;
any operation taking ``key_or_prefix`` matches every key that starts with the
given segment sequence unless ``exact=True`` is passed.

Fetch execution is delegated to fetchers registered per key family. A fetch
that is cancelled via ``cancel_in_flight`` never writes its late result, so an
optimistic write made after the cancellation cannot be clobbered.
"""

from __future__ import annotations

import asyncio
import time
from collections import defaultdict
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from loguru import logger

from ..datastructures.type_aliases import (
    CacheKey,
    DurationSeconds,
    Entity,
    EntityId,
    Timestamp,
)
from .stable_keys import format_key, key_matches
from .task_manager import ManagedObject

type Fetcher = Callable[[CacheKey], Awaitable[Any]]
type Clock = Callable[[], Timestamp]


class EntryKind(Enum):
    """Discriminator carried by every cache entry."""

    DETAIL = "detail"
    LIST = "list"
    AGGREGATE = "aggregate"


@dataclass(frozen=True, slots=True)
class CachePolicy:
    """Freshness and retention windows for an entry."""

    stale_after_seconds: DurationSeconds = 300.0
    evict_after_seconds: DurationSeconds = 600.0

    def __post_init__(self) -> None:
        if self.stale_after_seconds < 0 or self.evict_after_seconds < 0:
            raise ValueError("Cache policy durations must be non-negative")


DEFAULT_POLICY = CachePolicy()


@dataclass(frozen=True, slots=True)
class EntityPage:
    """One cached page of an ordered, filtered entity list."""

    items: tuple[Entity, ...] = ()
    total_count: int = 0

    @classmethod
    def from_payload(cls, payload: Any) -> EntityPage:
        """Accept an ``EntityPage`` or a ``{items, totalCount}`` style mapping."""
        if isinstance(payload, EntityPage):
            return payload
        items = tuple(payload.get("items", ()))
        total = payload.get("total_count", payload.get("totalCount", len(items)))
        return cls(items=items, total_count=int(total))

    def ids(self) -> list[EntityId]:
        return [item["id"] for item in self.items]

    def index_of(self, entity_id: EntityId) -> int | None:
        for index, item in enumerate(self.items):
            if item.get("id") == entity_id:
                return index
        return None

    def contains(self, entity_id: EntityId) -> bool:
        return self.index_of(entity_id) is not None


@dataclass(slots=True)
class CacheEntry:
    """A cached value plus the bookkeeping needed to age and evict it."""

    key: CacheKey
    kind: EntryKind
    value: Any
    fetched_at: Timestamp
    policy: CachePolicy = DEFAULT_POLICY
    invalidated: bool = False
    unobserved_since: Timestamp = 0.0

    def __post_init__(self) -> None:
        if self.unobserved_since == 0.0:
            self.unobserved_since = self.fetched_at

    def age_seconds(self, now: Timestamp) -> float:
        return now - self.fetched_at

    def is_stale(self, now: Timestamp) -> bool:
        """Stale entries are still served but are eligible for refetch."""
        if self.invalidated:
            return True
        return self.age_seconds(now) >= self.policy.stale_after_seconds


@dataclass(slots=True)
class InFlightFetch:
    """Handle for a running fetch, used for de-duplication and cancellation."""

    key: CacheKey
    started_at: Timestamp
    task: asyncio.Task[Any] | None = None
    cancelled: bool = False


@dataclass(slots=True)
class CacheStoreStatistics:
    """Counters describing store activity since the last reset."""

    hits: int = 0
    misses: int = 0
    fetches: int = 0
    invalidations: int = 0
    cancellations: int = 0
    evictions: int = 0

    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    def reset(self) -> None:
        self.hits = 0
        self.misses = 0
        self.fetches = 0
        self.invalidations = 0
        self.cancellations = 0
        self.evictions = 0


@dataclass(slots=True)
class _FetcherRegistration:
    prefix: CacheKey
    fetcher: Fetcher
    kind: EntryKind
    policy: CachePolicy | None = None


class CacheStore(ManagedObject):
    """Shared keyed store of cached entity, list and aggregate values."""

    def __init__(
        self,
        *,
        default_policy: CachePolicy = DEFAULT_POLICY,
        cleanup_interval_seconds: DurationSeconds | None = None,
        clock: Clock = time.monotonic,
    ) -> None:
        super().__init__(name=f"CacheStore-{id(self)}")
        self.default_policy = default_policy
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self.clock = clock
        self.statistics = CacheStoreStatistics()

        self._entries: dict[CacheKey, CacheEntry] = {}
        self._in_flight: dict[CacheKey, InFlightFetch] = {}
        self._observers: dict[CacheKey, int] = defaultdict(int)
        self._policy_defaults: dict[CacheKey, CachePolicy] = {}
        self._fetchers: dict[CacheKey, _FetcherRegistration] = {}
        self._cleanup_task: asyncio.Task[None] | None = None

        if cleanup_interval_seconds:
            self._start_cleanup_task(cleanup_interval_seconds)

    # Configuration

    def set_policy_defaults(self, prefix: CacheKey, policy: CachePolicy) -> None:
        """Use ``policy`` for every key under ``prefix`` unless one is given."""
        self._policy_defaults[prefix] = policy

    def policy_for(self, key: CacheKey) -> CachePolicy:
        best: CacheKey | None = None
        for prefix in self._policy_defaults:
            if key_matches(key, prefix) and (best is None or len(prefix) > len(best)):
                best = prefix
        return self._policy_defaults[best] if best is not None else self.default_policy

    def register_fetcher(
        self,
        prefix: CacheKey,
        fetcher: Fetcher,
        *,
        kind: EntryKind,
        policy: CachePolicy | None = None,
    ) -> None:
        """Register the fetch function used to (re)load keys under ``prefix``."""
        self._fetchers[prefix] = _FetcherRegistration(prefix, fetcher, kind, policy)

    def _registration_for(self, key: CacheKey) -> _FetcherRegistration | None:
        best: _FetcherRegistration | None = None
        for prefix, registration in self._fetchers.items():
            if key_matches(key, prefix) and (
                best is None or len(prefix) > len(best.prefix)
            ):
                best = registration
        return best

    # Reads and writes

    def get(self, key: CacheKey) -> CacheEntry | None:
        entry = self._entries.get(key)
        if entry is None:
            self.statistics.misses += 1
        else:
            self.statistics.hits += 1
        return entry

    def peek(self, key: CacheKey) -> CacheEntry | None:
        """Like ``get`` but without touching hit/miss statistics."""
        return self._entries.get(key)

    def get_value(self, key: CacheKey, default: Any = None) -> Any:
        entry = self._entries.get(key)
        return default if entry is None else entry.value

    def set(
        self,
        key: CacheKey,
        value: Any,
        policy: CachePolicy | None = None,
        *,
        kind: EntryKind = EntryKind.DETAIL,
    ) -> CacheEntry:
        """Create or overwrite an entry and reset its freshness clock."""
        now = self.clock()
        entry = self._entries.get(key)
        if entry is None:
            entry = CacheEntry(
                key=key,
                kind=kind,
                value=value,
                fetched_at=now,
                policy=policy or self.policy_for(key),
            )
            self._entries[key] = entry
        else:
            entry.kind = kind
            entry.value = value
            entry.fetched_at = now
            entry.invalidated = False
            if policy is not None:
                entry.policy = policy
        logger.debug(f"Cached {format_key(key)} ({kind.value})")
        return entry

    def restore(
        self,
        key: CacheKey,
        value: Any,
        *,
        kind: EntryKind,
        policy: CachePolicy,
        fetched_at: Timestamp,
        invalidated: bool = False,
    ) -> CacheEntry:
        """Write an entry back exactly as it was, freshness clock included."""
        entry = CacheEntry(
            key=key,
            kind=kind,
            value=value,
            fetched_at=fetched_at,
            policy=policy,
            invalidated=invalidated,
            unobserved_since=self.clock(),
        )
        self._entries[key] = entry
        logger.debug(f"Restored {format_key(key)} ({kind.value})")
        return entry

    def remove(self, key: CacheKey) -> CacheEntry | None:
        """Drop an entry entirely, returning it if it existed."""
        entry = self._entries.pop(key, None)
        if entry is not None:
            logger.debug(f"Removed {format_key(key)}")
        return entry

    def query(
        self, prefix: CacheKey, kind: EntryKind | None = None
    ) -> list[tuple[CacheKey, CacheEntry]]:
        """All entries whose key starts with ``prefix``, optionally of one kind."""
        return [
            (key, entry)
            for key, entry in self._entries.items()
            if key_matches(key, prefix) and (kind is None or entry.kind is kind)
        ]

    def _matching_keys(self, key_or_prefix: CacheKey, exact: bool) -> list[CacheKey]:
        if exact:
            return [key_or_prefix] if key_or_prefix in self._entries else []
        return [key for key in self._entries if key_matches(key, key_or_prefix)]

    # Invalidation and cancellation

    def invalidate(
        self, key_or_prefix: CacheKey, *, exact: bool = False, refetch: bool = True
    ) -> int:
        """Mark matching entries stale and refetch the ones being observed."""
        keys = self._matching_keys(key_or_prefix, exact)
        for key in keys:
            self._entries[key].invalidated = True

        self.statistics.invalidations += len(keys)
        if refetch:
            for key in keys:
                if self._observers.get(key, 0) > 0:
                    self._schedule_refetch(key)

        logger.debug(
            f"Invalidated {len(keys)} entries under {format_key(key_or_prefix)}"
        )
        return len(keys)

    def cancel_in_flight(self, key_or_prefix: CacheKey, *, exact: bool = False) -> int:
        """Abort pending fetches so their responses are never written.

        Cancelling a fetch that already finished or was already cancelled is a
        no-op.
        """
        if exact:
            handle = self._in_flight.get(key_or_prefix)
            handles = [handle] if handle is not None else []
        else:
            handles = [
                handle
                for key, handle in self._in_flight.items()
                if key_matches(key, key_or_prefix)
            ]
        for handle in handles:
            del self._in_flight[handle.key]

        cancelled = 0
        for handle in handles:
            if handle.cancelled:
                continue
            handle.cancelled = True
            self._task_manager.cancel(handle.task)
            cancelled += 1

        if cancelled:
            self.statistics.cancellations += cancelled
            logger.debug(
                f"Cancelled {cancelled} in-flight fetches under "
                f"{format_key(key_or_prefix)}"
            )
        return cancelled

    def in_flight(self, key: CacheKey) -> InFlightFetch | None:
        return self._in_flight.get(key)

    # Fetching

    async def fetch(
        self,
        key: CacheKey,
        fetcher: Fetcher | None = None,
        *,
        kind: EntryKind | None = None,
        policy: CachePolicy | None = None,
        force: bool = False,
    ) -> Any:
        """Return a fresh value for ``key``, fetching it when needed.

        Concurrent callers for the same key share one fetch. If that fetch is
        cancelled by a mutation, callers receive whatever the cache holds.
        """
        entry = self.get(key)
        if entry is not None and not force and not entry.is_stale(self.clock()):
            return entry.value

        handle = self._in_flight.get(key)
        if handle is None:
            handle = self._start_fetch(key, fetcher, kind, policy)
        if handle.task is None:
            raise RuntimeError(f"Fetch for {format_key(key)} has no task")

        try:
            return await asyncio.shield(handle.task)
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if handle.cancelled and (current is None or current.cancelling() == 0):
                return self.get_value(key)
            raise

    def _start_fetch(
        self,
        key: CacheKey,
        fetcher: Fetcher | None,
        kind: EntryKind | None,
        policy: CachePolicy | None,
    ) -> InFlightFetch:
        registration = self._registration_for(key)
        if fetcher is None:
            if registration is None:
                raise LookupError(f"No fetcher registered for {format_key(key)}")
            fetcher = registration.fetcher
        if kind is None:
            kind = registration.kind if registration is not None else EntryKind.DETAIL
        if policy is None and registration is not None:
            policy = registration.policy

        handle = InFlightFetch(key=key, started_at=self.clock())
        handle.task = self.create_task(
            self._run_fetch(handle, fetcher, kind, policy),
            name=f"fetch:{format_key(key)}",
        )
        self._in_flight[key] = handle
        self.statistics.fetches += 1
        return handle

    async def _run_fetch(
        self,
        handle: InFlightFetch,
        fetcher: Fetcher,
        kind: EntryKind,
        policy: CachePolicy | None,
    ) -> Any:
        key = handle.key
        try:
            value = await fetcher(key)
        finally:
            if self._in_flight.get(key) is handle:
                del self._in_flight[key]

        if handle.cancelled:
            logger.debug(f"Discarded late response for {format_key(key)}")
            return self.get_value(key)

        self.set(key, value, policy, kind=kind)
        return value

    def _schedule_refetch(self, key: CacheKey) -> None:
        if self._registration_for(key) is None:
            return
        if key in self._in_flight:
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No event loop running, not refetching {format_key(key)}")
            return
        self._start_fetch(key, None, None, None)

    # Observation and eviction

    def observe(self, key: CacheKey) -> None:
        self._observers[key] += 1

    def release(self, key: CacheKey) -> None:
        count = self._observers.get(key, 0) - 1
        if count > 0:
            self._observers[key] = count
            return
        self._observers.pop(key, None)
        entry = self._entries.get(key)
        if entry is not None:
            entry.unobserved_since = self.clock()

    @contextmanager
    def observing(self, key: CacheKey) -> Iterator[None]:
        self.observe(key)
        try:
            yield
        finally:
            self.release(key)

    def observer_count(self, key: CacheKey) -> int:
        return self._observers.get(key, 0)

    def evict_expired(self, now: Timestamp | None = None) -> list[CacheKey]:
        """Remove unobserved entries whose retention window has elapsed."""
        now = self.clock() if now is None else now
        expired = [
            key
            for key, entry in self._entries.items()
            if self._observers.get(key, 0) == 0
            and key not in self._in_flight
            and now - max(entry.unobserved_since, entry.fetched_at)
            >= entry.policy.evict_after_seconds
        ]
        for key in expired:
            del self._entries[key]

        self.statistics.evictions += len(expired)
        if expired:
            logger.debug(f"Evicted {len(expired)} expired cache entries")
        return expired

    def _start_cleanup_task(self, interval: DurationSeconds) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No event loop running, skipping cleanup task")
            return
        self._cleanup_task = self.create_task(
            self._periodic_cleanup(interval),
            name="periodic_cleanup",
        )

    async def _periodic_cleanup(self, interval: DurationSeconds) -> None:
        while True:
            await asyncio.sleep(interval)
            self.evict_expired()

    async def drain(self) -> None:
        """Wait for running fetches; the periodic cleanup task is not awaited."""
        while True:
            pending = [
                task
                for task in self._task_manager.tasks
                if not task.done() and task is not self._cleanup_task
            ]
            if not pending:
                return
            await asyncio.wait(pending)

    def clear(self) -> None:
        self._entries.clear()
        self.cancel_in_flight(())
        logger.info("Cache cleared")

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    async def shutdown(self) -> None:
        await super().shutdown()
        self._entries.clear()
        self._in_flight.clear()
        logger.debug("Cache store shutdown complete")
