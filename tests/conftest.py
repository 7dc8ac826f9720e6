"""Pytest configuration and fixtures for kitcache testing.

Every fixture that owns background tasks shuts them down on teardown so no
test leaves reconcile or refetch tasks running. Time is injected: ``clock``
is a manually advanced monotonic clock and ``sleeper`` records requested
delays without waiting for them.
"""

import asyncio
from collections.abc import AsyncGenerator, Callable
from typing import Any

import pytest
import pytest_asyncio

from kitcache.backends.memory import (
    InMemoryEntityStore,
    InMemoryPreferenceStore,
    RecordingNotifier,
)
from kitcache.config import KitCacheSettings
from kitcache.core.cache_store import CacheStore
from kitcache.core.engine import CollectionCache
from kitcache.core.mutations import OptimisticMutationCoordinator
from kitcache.core.retry import create_retry_classifier

OWNER = "user-1"
TODAY = "2025-07-17"
STATUSES = ("wishlist", "purchased", "stash", "progress", "completed")


class ManualClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SleepRecorder:
    """Stand-in for ``asyncio.sleep`` that records delays and only yields."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        await asyncio.sleep(0)


def make_projects(
    count: int, owner: str = OWNER, statuses: tuple[str, ...] = STATUSES
) -> list[dict[str, Any]]:
    """Projects ordered newest first by ``last_updated``."""
    return [
        {
            "id": f"p{index:03d}",
            "user": owner,
            "title": f"Kit {index:03d}",
            "status": statuses[index % len(statuses)],
            "company": "acme" if index % 2 else "globex",
            "tags": ["t1"] if index % 3 == 0 else [],
            "last_updated": f"2025-01-01T00:00:00.{count - index:06d}Z",
        }
        for index in range(count)
    ]


@pytest.fixture
def project_factory() -> Callable[..., list[dict[str, Any]]]:
    return make_projects


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def remote() -> InMemoryEntityStore:
    return InMemoryEntityStore()


@pytest.fixture
def preferences() -> InMemoryPreferenceStore:
    return InMemoryPreferenceStore()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def settings() -> KitCacheSettings:
    return KitCacheSettings(
        cleanup_interval_seconds=None,
        settle_delay_seconds=0.0,
        retry_jitter_factor=0.0,
    )


@pytest_asyncio.fixture
async def store(clock: ManualClock) -> AsyncGenerator[CacheStore, None]:
    cache_store = CacheStore(clock=clock)
    yield cache_store
    await cache_store.shutdown()


@pytest_asyncio.fixture
async def coordinator(
    store: CacheStore,
    remote: InMemoryEntityStore,
    preferences: InMemoryPreferenceStore,
    notifier: RecordingNotifier,
    sleeper: SleepRecorder,
) -> AsyncGenerator[OptimisticMutationCoordinator, None]:
    mutations = OptimisticMutationCoordinator(
        store,
        remote,
        notify=notifier,
        preferences=preferences,
        settle_delay_seconds=0.25,
        mutation_retry=create_retry_classifier("mutation", 1, jitter_factor=0.0),
        status_retry=create_retry_classifier("status", 3, jitter_factor=0.0),
        delete_retry=create_retry_classifier("delete", 1, jitter_factor=0.0),
        sleep=sleeper,
        today=lambda: TODAY,
    )
    yield mutations
    await mutations.shutdown()


@pytest_asyncio.fixture
async def cache(
    remote: InMemoryEntityStore,
    preferences: InMemoryPreferenceStore,
    notifier: RecordingNotifier,
    settings: KitCacheSettings,
    clock: ManualClock,
    sleeper: SleepRecorder,
) -> AsyncGenerator[CollectionCache, None]:
    async with CollectionCache(
        remote,
        preferences=preferences,
        notify=notifier,
        settings=settings,
        clock=clock,
        sleep=sleeper,
        today=lambda: TODAY,
    ) as collection_cache:
        yield collection_cache
