"""
End-to-end tests for ``CollectionCache`` against the in-memory backend.
"""

import pytest

from kitcache.core.aggregates import AggregateSource
from kitcache.core.engine import CollectionCache
from kitcache.core.errors import NetworkFault
from kitcache.core.mutations import Committed
from kitcache.core.navigation import DEFAULT_FILTERS, ContextSource, NavigationContext
from kitcache.core.stable_keys import decode_list_params

from tests.conftest import OWNER, make_projects


@pytest.fixture
def seeded(remote):
    projects = make_projects(120)
    remote.seed("projects", projects)
    remote.seed("projects", make_projects(7, owner="someone-else"))
    return projects


def test_decode_list_params():
    key = ("projects", "list", "u_1", '{"page":2,"page_size":10}')

    assert decode_list_params(key) == {"page": 2, "page_size": 10}
    assert decode_list_params(("projects", "list", "u_1", "[1]")) == {}
    assert decode_list_params(("projects", "list", "u_1", "not json")) == {}
    assert decode_list_params(("projects", "list")) == {}


class TestReads:
    @pytest.mark.asyncio
    async def test_fetch_list_caches_pages(
        self, cache: CollectionCache, remote, seeded
    ):
        first = await cache.fetch_list("projects", OWNER)
        second = await cache.fetch_list("projects", OWNER)

        assert first.ids()[:3] == ["p000", "p001", "p002"]
        assert len(first.items) == 25
        assert first.total_count == 120
        assert second == first
        assert remote.calls["fetch_list"] == 1

    @pytest.mark.asyncio
    async def test_force_refetches(self, cache, remote, seeded):
        await cache.fetch_list("projects", OWNER)
        await cache.fetch_list("projects", OWNER, force=True)

        assert remote.calls["fetch_list"] == 2

    @pytest.mark.asyncio
    async def test_filters_select_their_own_page(self, cache, seeded):
        stash = NavigationContext(filters={**DEFAULT_FILTERS, "status": "stash"})

        page = await cache.fetch_list("projects", OWNER, stash)

        assert page.total_count == 24
        assert {item["status"] for item in page.items} == {"stash"}
        assert len(cache.store.query(cache.keys("projects").lists())) == 1

    @pytest.mark.asyncio
    async def test_list_fetch_retried(self, cache, remote, seeded, sleeper):
        remote.fail_next("fetch_list", NetworkFault())

        page = await cache.fetch_list("projects", OWNER)

        assert page.total_count == 120
        assert sleeper.delays == [1.0]

    @pytest.mark.asyncio
    async def test_fetch_entity(self, cache, remote, seeded):
        entity = await cache.fetch_entity("projects", "p010")
        again = await cache.fetch_entity("projects", "p010")

        assert entity["title"] == "Kit 010"
        assert again == entity
        assert remote.calls["fetch_entity"] == 1


class TestAggregates:
    @pytest.mark.asyncio
    async def test_counts_become_cache_derived_after_paging(self, cache, seeded):
        context = NavigationContext()
        await cache.fetch_list("projects", OWNER, context)

        before = await cache.get_aggregate("projects", OWNER)
        for page in range(2, 6):
            await cache.fetch_list("projects", OWNER, context.with_page(page))
        after = await cache.get_aggregate("projects", OWNER)

        assert before.source is AggregateSource.AUTHORITATIVE
        assert after.source is AggregateSource.CACHE_DERIVED
        assert before.counts == after.counts
        assert sum(after.counts.values()) == 120

    @pytest.mark.asyncio
    async def test_status_change_invalidates_authoritative_counts(
        self, cache, remote, seeded
    ):
        before = await cache.get_aggregate("projects", OWNER)

        await cache.mutations.update_status(
            "projects", "p000", "archived", owner_id=OWNER
        )
        after = await cache.get_aggregate("projects", OWNER)

        assert remote.calls["fetch_aggregate"] == 2
        assert after.counts["archived"] == before.counts["archived"] + 1


class TestMutationsThroughFacade:
    @pytest.mark.asyncio
    async def test_observed_page_refetched_after_reconcile(
        self, cache, remote, seeded
    ):
        page = await cache.fetch_list("projects", OWNER)
        key = cache.keys("projects").list(
            OWNER, cache.navigation.default_context.to_query_params()
        )
        target = page.items[5]["id"]

        with cache.store.observing(key):
            outcome = await cache.mutations.update_entity(
                "projects", target, {"title": "Renamed"}, owner_id=OWNER
            )
            await cache.drain()

        refreshed = cache.store.peek(key)
        assert isinstance(outcome, Committed)
        assert not refreshed.invalidated
        assert remote.calls["fetch_list"] == 2
        # The server bumped last_updated, so the renamed kit now sorts first.
        assert refreshed.value.items[0]["id"] == target
        assert refreshed.value.items[0]["title"] == "Renamed"


class TestNavigation:
    @pytest.mark.asyncio
    async def test_navigate_loads_page_and_finds_siblings(self, cache, remote, seeded):
        resolved, siblings = await cache.navigate("projects", OWNER, "p001")

        assert resolved.source is ContextSource.DEFAULT
        assert siblings.previous["id"] == "p000"
        assert siblings.next["id"] == "p002"
        assert siblings.total_count == 120
        assert remote.calls["fetch_list"] == 1

    @pytest.mark.asyncio
    async def test_navigate_without_load_reports_loading(self, cache, seeded):
        _resolved, siblings = await cache.navigate(
            "projects", OWNER, "p001", load=False
        )

        assert siblings.is_loading

    @pytest.mark.asyncio
    async def test_persisted_preference_drives_navigation(self, cache, seeded):
        saved = NavigationContext(page=2, page_size=10)
        await cache.mutations.save_navigation_preference(OWNER, saved)

        resolved, siblings = await cache.navigate("projects", OWNER, "p010")

        assert resolved.source is ContextSource.PERSISTED
        assert resolved.context.page == 2
        assert siblings.current_index == 0
        assert siblings.previous is None
        assert siblings.previous_page_context.page == 1
        assert siblings.next["id"] == "p011"

    @pytest.mark.asyncio
    async def test_transient_context_wins(self, cache, seeded):
        await cache.mutations.save_navigation_preference(
            OWNER, NavigationContext(page=2)
        )

        resolved, _siblings = await cache.navigate(
            "projects", OWNER, "p001", {"currentPage": 1, "pageSize": 5}
        )

        assert resolved.source is ContextSource.TRANSIENT
        assert resolved.context.page_size == 5


@pytest.mark.asyncio
async def test_context_manager_shuts_down(remote, settings, seeded):
    async with CollectionCache(remote, settings=settings) as cache:
        await cache.fetch_list("projects", OWNER)

    assert len(cache.store) == 0
    with pytest.raises(RuntimeError):
        cache.mutations.create_task(cache.drain())
