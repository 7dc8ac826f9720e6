"""
Tests for the keyed cache store.

Covers tagged entries, staleness, prefix invalidation with observer-driven
refetch, fetch de-duplication, in-flight cancellation and eviction.
"""

import asyncio

import pytest

from kitcache.core.cache_store import (
    CacheEntry,
    CachePolicy,
    CacheStore,
    EntityPage,
    EntryKind,
)


def list_key(page: int) -> tuple:
    return ("projects", "list", "u_1", f'{{"page":{page}}}')


class TestEntityPage:
    def test_from_payload_accepts_camel_case(self):
        page = EntityPage.from_payload(
            {"items": [{"id": "a"}, {"id": "b"}], "totalCount": 7}
        )

        assert page.total_count == 7
        assert page.ids() == ["a", "b"]
        assert page.index_of("b") == 1
        assert page.index_of("z") is None

    def test_from_payload_defaults_total_to_length(self):
        page = EntityPage.from_payload({"items": [{"id": "a"}]})

        assert page.total_count == 1

    def test_from_payload_passthrough(self):
        page = EntityPage(items=({"id": "a"},), total_count=1)

        assert EntityPage.from_payload(page) is page


class TestCachePolicy:
    def test_rejects_negative_durations(self):
        with pytest.raises(ValueError):
            CachePolicy(stale_after_seconds=-1)

    def test_entry_staleness(self):
        entry = CacheEntry(
            key=("k",),
            kind=EntryKind.DETAIL,
            value=1,
            fetched_at=100.0,
            policy=CachePolicy(stale_after_seconds=10, evict_after_seconds=20),
        )

        assert not entry.is_stale(109.9)
        assert entry.is_stale(110.0)
        entry.invalidated = True
        assert entry.is_stale(100.0)


class TestReadsAndWrites:
    def test_get_absent(self, store: CacheStore):
        assert store.get(("missing",)) is None
        assert store.statistics.misses == 1

    def test_set_and_get(self, store: CacheStore, clock):
        entry = store.set(("projects", "detail", "p1"), {"id": "p1"})

        assert store.get(("projects", "detail", "p1")) is entry
        assert entry.kind is EntryKind.DETAIL
        assert entry.fetched_at == clock()
        assert store.statistics.hits == 1

    def test_overwrite_resets_freshness(self, store: CacheStore, clock):
        key = ("projects", "detail", "p1")
        store.set(key, {"id": "p1", "v": 1})
        store.invalidate(key)
        clock.advance(50)

        entry = store.set(key, {"id": "p1", "v": 2})

        assert entry.value == {"id": "p1", "v": 2}
        assert entry.fetched_at == clock()
        assert not entry.invalidated

    def test_peek_does_not_count(self, store: CacheStore):
        store.set(("k",), 1)
        store.peek(("k",))
        store.peek(("missing",))

        assert store.statistics.hits == 0
        assert store.statistics.misses == 0

    def test_policy_defaults_longest_prefix(self, store: CacheStore):
        short = CachePolicy(stale_after_seconds=1, evict_after_seconds=2)
        long = CachePolicy(stale_after_seconds=3, evict_after_seconds=4)
        store.set_policy_defaults(("projects",), short)
        store.set_policy_defaults(("projects", "aggregate"), long)

        assert store.set(("projects", "detail", "p1"), 1).policy == short
        assert store.set(("projects", "aggregate", "u_1"), 1).policy == long
        assert store.set(("tags", "detail", "t1"), 1).policy == store.default_policy

    def test_query_filters_by_prefix_and_kind(self, store: CacheStore):
        store.set(list_key(1), EntityPage(), kind=EntryKind.LIST)
        store.set(list_key(2), EntityPage(), kind=EntryKind.LIST)
        store.set(("projects", "detail", "p1"), {"id": "p1"})
        store.set(("tags", "list", "u_1", "{}"), EntityPage(), kind=EntryKind.LIST)

        lists = store.query(("projects",), EntryKind.LIST)
        everything = store.query(("projects",))

        assert {key for key, _ in lists} == {list_key(1), list_key(2)}
        assert len(everything) == 3

    def test_restore_keeps_original_timestamps(self, store: CacheStore, clock):
        policy = CachePolicy(stale_after_seconds=5, evict_after_seconds=10)

        entry = store.restore(
            ("k",), "v", kind=EntryKind.LIST, policy=policy, fetched_at=1.0
        )

        assert entry.fetched_at == 1.0
        assert entry.policy == policy
        assert entry.is_stale(clock())


class TestInvalidation:
    def test_prefix_invalidation(self, store: CacheStore):
        store.set(list_key(1), EntityPage(), kind=EntryKind.LIST)
        store.set(list_key(2), EntityPage(), kind=EntryKind.LIST)
        store.set(("projects", "detail", "p1"), {"id": "p1"})

        count = store.invalidate(("projects", "list"))

        assert count == 2
        assert store.peek(list_key(1)).invalidated
        assert not store.peek(("projects", "detail", "p1")).invalidated

    def test_exact_invalidation(self, store: CacheStore):
        store.set(("a",), 1)
        store.set(("a", "b"), 2)

        assert store.invalidate(("a",), exact=True) == 1
        assert not store.peek(("a", "b")).invalidated

    @pytest.mark.asyncio
    async def test_observed_keys_refetch(self, store: CacheStore):
        calls: list[tuple] = []

        async def fetcher(key):
            calls.append(key)
            return {"id": key[-1], "fresh": True}

        store.register_fetcher(("projects", "detail"), fetcher, kind=EntryKind.DETAIL)
        observed = ("projects", "detail", "p1")
        unobserved = ("projects", "detail", "p2")
        store.set(observed, {"id": "p1"})
        store.set(unobserved, {"id": "p2"})

        with store.observing(observed):
            store.invalidate(("projects", "detail"))
            await store.drain()

        assert calls == [observed]
        assert store.get_value(observed) == {"id": "p1", "fresh": True}
        assert store.peek(unobserved).invalidated


class TestFetch:
    @pytest.mark.asyncio
    async def test_fresh_value_served_from_cache(self, store: CacheStore):
        store.set(("k",), "cached")

        async def fetcher(key):
            raise AssertionError("should not fetch")

        assert await store.fetch(("k",), fetcher) == "cached"

    @pytest.mark.asyncio
    async def test_stale_value_refetched(self, store: CacheStore, clock):
        store.set(("k",), "old", CachePolicy(stale_after_seconds=10))
        clock.advance(10)

        async def fetcher(key):
            return "new"

        assert await store.fetch(("k",), fetcher) == "new"
        assert store.get_value(("k",)) == "new"

    @pytest.mark.asyncio
    async def test_concurrent_fetches_share_one_call(self, store: CacheStore):
        calls = 0
        release = asyncio.Event()

        async def fetcher(key):
            nonlocal calls
            calls += 1
            await release.wait()
            return "value"

        first = asyncio.create_task(store.fetch(("k",), fetcher))
        second = asyncio.create_task(store.fetch(("k",), fetcher))
        await asyncio.sleep(0)
        release.set()

        assert await asyncio.gather(first, second) == ["value", "value"]
        assert calls == 1
        assert store.statistics.fetches == 1

    @pytest.mark.asyncio
    async def test_registered_fetcher_and_kind(self, store: CacheStore):
        async def fetcher(key):
            return EntityPage(items=({"id": "a"},), total_count=1)

        store.register_fetcher(("projects", "list"), fetcher, kind=EntryKind.LIST)

        await store.fetch(list_key(1))

        assert store.peek(list_key(1)).kind is EntryKind.LIST

    @pytest.mark.asyncio
    async def test_missing_fetcher(self, store: CacheStore):
        with pytest.raises(LookupError):
            await store.fetch(("unknown",))

    @pytest.mark.asyncio
    async def test_fetch_error_propagates_and_clears_in_flight(self, store: CacheStore):
        async def fetcher(key):
            raise ConnectionError("offline")

        with pytest.raises(ConnectionError):
            await store.fetch(("k",), fetcher)

        assert store.in_flight(("k",)) is None
        assert ("k",) not in store


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancelled_fetch_never_writes(self, store: CacheStore):
        started = asyncio.Event()
        release = asyncio.Event()

        async def fetcher(key):
            started.set()
            await release.wait()
            return "stale server value"

        waiter = asyncio.create_task(store.fetch(("k",), fetcher))
        await started.wait()

        assert store.cancel_in_flight(("k",)) == 1
        store.set(("k",), "speculative")
        release.set()

        assert await waiter == "speculative"
        assert store.get_value(("k",)) == "speculative"
        assert store.in_flight(("k",)) is None

    @pytest.mark.asyncio
    async def test_cancellation_is_idempotent(self, store: CacheStore):
        release = asyncio.Event()

        async def fetcher(key):
            await release.wait()
            return 1

        waiter = asyncio.create_task(store.fetch(("k",), fetcher))
        await asyncio.sleep(0)

        assert store.cancel_in_flight(("k",)) == 1
        assert store.cancel_in_flight(("k",)) == 0
        release.set()
        await waiter

        assert store.cancel_in_flight(("k",)) == 0
        assert store.statistics.cancellations == 1

    @pytest.mark.asyncio
    async def test_prefix_cancellation(self, store: CacheStore):
        release = asyncio.Event()

        async def fetcher(key):
            await release.wait()
            return EntityPage()

        waiters = [
            asyncio.create_task(store.fetch(list_key(page), fetcher))
            for page in (1, 2)
        ]
        await asyncio.sleep(0)

        assert store.cancel_in_flight(("projects", "list")) == 2
        release.set()

        assert await asyncio.gather(*waiters) == [None, None]
        assert len(store) == 0


class TestEviction:
    def test_unobserved_entries_evicted(self, store: CacheStore, clock):
        policy = CachePolicy(stale_after_seconds=5, evict_after_seconds=10)
        store.set(("old",), 1, policy)
        clock.advance(5)
        store.set(("young",), 2, policy)
        clock.advance(5)

        assert store.evict_expired() == [("old",)]
        assert ("young",) in store
        assert store.statistics.evictions == 1

    def test_observed_entries_kept(self, store: CacheStore, clock):
        store.set(("k",), 1, CachePolicy(evict_after_seconds=10))
        store.observe(("k",))
        clock.advance(100)

        assert store.evict_expired() == []

        store.release(("k",))
        assert store.evict_expired() == []
        clock.advance(10)
        assert store.evict_expired() == [("k",)]

    def test_observer_counting(self, store: CacheStore):
        store.observe(("k",))
        store.observe(("k",))
        store.release(("k",))

        assert store.observer_count(("k",)) == 1
        store.release(("k",))
        assert store.observer_count(("k",)) == 0

    @pytest.mark.asyncio
    async def test_periodic_cleanup_task(self, clock):
        store = CacheStore(cleanup_interval_seconds=0.01, clock=clock)
        try:
            store.set(("k",), 1, CachePolicy(evict_after_seconds=1))
            clock.advance(5)
            for _ in range(50):
                if ("k",) not in store:
                    break
                await asyncio.sleep(0.01)

            assert ("k",) not in store
            await store.drain()
        finally:
            await store.shutdown()

    def test_cleanup_skipped_without_loop(self):
        store = CacheStore(cleanup_interval_seconds=1)

        assert len(store._task_manager) == 0


@pytest.mark.asyncio
async def test_clear_cancels_fetches(store: CacheStore):
    release = asyncio.Event()

    async def fetcher(key):
        await release.wait()
        return 1

    waiter = asyncio.create_task(store.fetch(("k",), fetcher))
    store.set(("other",), 2)
    await asyncio.sleep(0)

    store.clear()
    release.set()

    assert await waiter is None
    assert len(store) == 0
