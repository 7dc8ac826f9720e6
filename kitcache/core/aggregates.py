"""
Aggregate counts derived from cached lists.

Dashboards need per-category counts (e.g. how many projects are in each
status). When the client has already paged through most of an owner's
entities, those counts can be computed from the cached pages without a round
trip. ``DerivedAggregateEngine`` decides per request whether the cache covers
enough of the population to be trusted and otherwise asks the authoritative
aggregate source, caching its answer under the owner's aggregate key.

Aggregates are never patched by hand; mutations invalidate the aggregate key
and the next request recomputes.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum

from loguru import logger

from ..datastructures.type_aliases import (
    CacheKey,
    CategoryCounts,
    Entity,
    EntityId,
    EntityKind,
    OwnerId,
)
from .cache_store import CachePolicy, CacheStore, EntityPage, EntryKind
from .interfaces import RemoteEntityStore
from .retry import (
    RetryClassifier,
    Sleep,
    call_with_retry,
    create_query_retry_classifier,
)
from .stable_keys import DEFAULT_ENCODER, EntityKeys, StableKeyEncoder

DEFAULT_CATEGORIES: tuple[str, ...] = (
    "wishlist",
    "purchased",
    "stash",
    "progress",
    "completed",
    "archived",
    "destashed",
)


class AggregateSource(Enum):
    CACHE_DERIVED = "cache-derived"
    AUTHORITATIVE = "authoritative"


@dataclass(frozen=True, slots=True)
class AggregateThresholds:
    """When cached pages are trusted for counting."""

    coverage_threshold: float = 0.8
    min_cached: int = 50
    category_field: str = "status"
    categories: tuple[str, ...] = DEFAULT_CATEGORIES

    def __post_init__(self) -> None:
        if not 0.0 <= self.coverage_threshold <= 1.0:
            raise ValueError("coverage_threshold must be within [0, 1]")
        if self.min_cached < 0:
            raise ValueError("min_cached must be non-negative")


@dataclass(frozen=True, slots=True)
class AggregateSnapshot:
    """Coverage estimate of the cache for one owner and kind."""

    cached_count: int
    estimated_total: int

    @property
    def coverage_ratio(self) -> float:
        return self.cached_count / max(self.estimated_total, 1)


@dataclass(frozen=True, slots=True)
class AggregateResult:
    counts: CategoryCounts
    source: AggregateSource
    snapshot: AggregateSnapshot
    cached_pages: int = 0

    @property
    def cache_hit_rate(self) -> float:
        return min(self.snapshot.coverage_ratio, 1.0)


@dataclass(slots=True)
class _CachedPopulation:
    items: dict[EntityId, Entity] = field(default_factory=dict)
    estimated_total: int = 0
    pages: int = 0


class DerivedAggregateEngine:
    """Computes category counts from the cache or the authoritative source."""

    def __init__(
        self,
        store: CacheStore,
        remote: RemoteEntityStore,
        *,
        thresholds: AggregateThresholds | None = None,
        policy: CachePolicy | None = None,
        retry: RetryClassifier | None = None,
        encoder: StableKeyEncoder = DEFAULT_ENCODER,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.store = store
        self.remote = remote
        self.thresholds = thresholds or AggregateThresholds()
        self.policy = policy
        self.retry = retry or create_query_retry_classifier()
        self.encoder = encoder
        self.sleep = sleep

    def _scan(self, kind: EntityKind, owner_id: OwnerId) -> _CachedPopulation:
        population = _CachedPopulation()
        prefix = EntityKeys(kind, self.encoder).owner_lists(owner_id)
        for _key, entry in self.store.query(prefix, EntryKind.LIST):
            page = EntityPage.from_payload(entry.value)
            population.pages += 1
            population.estimated_total = max(
                population.estimated_total, page.total_count
            )
            for item in page.items:
                entity_id = item.get("id")
                if entity_id is not None:
                    population.items[entity_id] = item
        return population

    def snapshot(self, kind: EntityKind, owner_id: OwnerId) -> AggregateSnapshot:
        population = self._scan(kind, owner_id)
        return AggregateSnapshot(len(population.items), population.estimated_total)

    def can_derive(self, snapshot: AggregateSnapshot) -> bool:
        return (
            snapshot.coverage_ratio >= self.thresholds.coverage_threshold
            and snapshot.cached_count > self.thresholds.min_cached
        )

    def count(
        self, items: Mapping[EntityId, Entity] | Iterable[Entity]
    ) -> CategoryCounts:
        """Group ``items`` by the category field.

        With configured categories, every category starts at zero and unknown
        values are ignored.
        """
        values = items.values() if isinstance(items, Mapping) else items
        categories = self.thresholds.categories
        counts: CategoryCounts = dict.fromkeys(categories, 0)
        for item in values:
            category = item.get(self.thresholds.category_field)
            if category is None or (categories and category not in counts):
                continue
            counts[category] = counts.get(category, 0) + 1
        return counts

    async def get_aggregate(
        self,
        kind: EntityKind,
        owner_id: OwnerId,
        *,
        force_authoritative: bool = False,
    ) -> AggregateResult:
        population = self._scan(kind, owner_id)
        snapshot = AggregateSnapshot(len(population.items), population.estimated_total)

        if not force_authoritative and self.can_derive(snapshot):
            logger.debug(
                f"Deriving {kind} counts from cache: {snapshot.cached_count}/"
                f"{snapshot.estimated_total} ({snapshot.coverage_ratio:.0%})"
            )
            return AggregateResult(
                counts=self.count(population.items),
                source=AggregateSource.CACHE_DERIVED,
                snapshot=snapshot,
                cached_pages=population.pages,
            )

        logger.debug(
            f"Cache coverage {snapshot.coverage_ratio:.0%} too low for {kind}, "
            "using authoritative counts"
        )
        counts = await self._fetch_authoritative(kind, owner_id)
        return AggregateResult(
            counts=counts,
            source=AggregateSource.AUTHORITATIVE,
            snapshot=snapshot,
            cached_pages=population.pages,
        )

    async def _fetch_authoritative(
        self, kind: EntityKind, owner_id: OwnerId
    ) -> CategoryCounts:
        remote = self.remote

        async def fetcher(_key: CacheKey) -> CategoryCounts:
            return await call_with_retry(
                lambda: remote.fetch_aggregate(kind, owner_id),
                self.retry,
                description=f"fetch {kind} aggregate",
                sleep=self.sleep,
            )

        key = EntityKeys(kind, self.encoder).aggregate(owner_id)
        value = await self.store.fetch(
            key, fetcher, kind=EntryKind.AGGREGATE, policy=self.policy
        )
        counts = dict.fromkeys(self.thresholds.categories, 0)
        counts.update(value or {})
        return counts
