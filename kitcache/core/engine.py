"""
``CollectionCache``: one explicitly constructed ``CacheStore`` wired into the
mutation coordinator, the aggregate engine and the navigation resolvers.

Applications create one ``CollectionCache`` per session and pass it (or its
components) to whatever needs cached data. There is no module-level instance.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Iterable, Mapping
from typing import TYPE_CHECKING, Any

from loguru import logger

from ..datastructures.type_aliases import (
    CacheKey,
    Entity,
    EntityId,
    EntityKind,
    OwnerId,
)
from .aggregates import AggregateResult, DerivedAggregateEngine
from .cache_store import CacheStore, Clock, EntityPage, EntryKind
from .interfaces import (
    NotificationSink,
    PreferenceStore,
    RemoteEntityStore,
    discard_notification,
)
from .mutations import OptimisticMutationCoordinator
from .navigation import (
    NavigationContext,
    NavigationContextResolver,
    ResolvedNavigation,
    SiblingResolver,
    SiblingResult,
)
from .retry import Sleep, call_with_retry
from .stable_keys import (
    DEFAULT_ENCODER,
    EntityKeys,
    StableKeyEncoder,
    decode_list_params,
    hash_owner_id,
)

if TYPE_CHECKING:
    from ..config import KitCacheSettings

OWNER_PARAM = "owner_id"


class CollectionCache:
    """Facade over the optimistic cache consistency engine."""

    def __init__(
        self,
        remote: RemoteEntityStore,
        *,
        preferences: PreferenceStore | None = None,
        notify: NotificationSink = discard_notification,
        settings: KitCacheSettings | None = None,
        kinds: Iterable[EntityKind] = ("projects",),
        encoder: StableKeyEncoder = DEFAULT_ENCODER,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
        today: Callable[[], str] | None = None,
    ) -> None:
        if settings is None:
            # config imports from core, so it is loaded lazily here
            from ..config import KitCacheSettings

            settings = KitCacheSettings()
        self.settings = settings
        self.remote = remote
        self.preferences = preferences
        self.encoder = encoder
        self.sleep = sleep
        self.query_retry = self.settings.retry_classifier("query")

        self.store = CacheStore(
            default_policy=self.settings.cache_policy(),
            cleanup_interval_seconds=self.settings.cleanup_interval_seconds,
            clock=clock,
        )

        coordinator_options: dict[str, Any] = {}
        if today is not None:
            coordinator_options["today"] = today
        self.mutations = OptimisticMutationCoordinator(
            self.store,
            remote,
            notify=notify,
            preferences=preferences,
            encoder=encoder,
            settle_delay_seconds=self.settings.settle_delay_seconds,
            mutation_retry=self.settings.retry_classifier("mutation"),
            status_retry=self.settings.retry_classifier("status"),
            delete_retry=self.settings.retry_classifier("delete"),
            sleep=sleep,
            **coordinator_options,
        )
        self.aggregates = DerivedAggregateEngine(
            self.store,
            remote,
            thresholds=self.settings.aggregate_thresholds(),
            policy=self.settings.aggregate_policy(),
            retry=self.query_retry,
            encoder=encoder,
            sleep=sleep,
        )
        self.navigation = NavigationContextResolver(
            self.store,
            preferences,
            default_context=NavigationContext(
                page_size=self.settings.default_page_size
            ),
        )
        self.siblings = SiblingResolver(self.store, encoder=encoder)

        self._kinds: set[EntityKind] = set()
        self._owners: set[tuple[EntityKind, OwnerId]] = set()
        for kind in kinds:
            self.register_kind(kind)

    def keys(self, kind: EntityKind) -> EntityKeys:
        return EntityKeys(kind, self.encoder)

    def register_kind(self, kind: EntityKind) -> None:
        """Register the detail fetcher and policy defaults for ``kind``."""
        if kind in self._kinds:
            return
        self._kinds.add(kind)
        keys = self.keys(kind)
        remote = self.remote

        async def fetch_detail(key: CacheKey) -> Entity:
            entity_id = str(key[2])
            return await call_with_retry(
                lambda: remote.fetch_entity(kind, entity_id),
                self.query_retry,
                description=f"fetch {kind} {entity_id}",
                sleep=self.sleep,
            )

        self.store.register_fetcher(keys.details(), fetch_detail, kind=EntryKind.DETAIL)
        self.store.set_policy_defaults(
            (kind, "aggregate"), self.settings.aggregate_policy()
        )
        logger.debug(f"Registered entity kind {kind}")

    def _register_owner(self, kind: EntityKind, owner_id: OwnerId) -> None:
        """Owner-scoped fetchers, so background refetches know the raw owner id."""
        if (kind, owner_id) in self._owners:
            return
        self.register_kind(kind)
        self._owners.add((kind, owner_id))
        keys = self.keys(kind)
        remote = self.remote

        async def fetch_page(key: CacheKey) -> EntityPage:
            params = {**decode_list_params(key), OWNER_PARAM: owner_id}
            payload = await call_with_retry(
                lambda: remote.fetch_list(kind, params),
                self.query_retry,
                description=f"fetch {kind} list",
                sleep=self.sleep,
            )
            return EntityPage.from_payload(payload)

        async def fetch_counts(_key: CacheKey) -> Mapping[str, int]:
            return await call_with_retry(
                lambda: remote.fetch_aggregate(kind, owner_id),
                self.query_retry,
                description=f"fetch {kind} aggregate",
                sleep=self.sleep,
            )

        self.store.register_fetcher(
            keys.owner_lists(owner_id), fetch_page, kind=EntryKind.LIST
        )
        self.store.register_fetcher(
            keys.aggregate(owner_id), fetch_counts, kind=EntryKind.AGGREGATE
        )
        logger.debug(f"Registered {kind} fetchers for owner {hash_owner_id(owner_id)}")

    # Reads

    async def fetch_list(
        self,
        kind: EntityKind,
        owner_id: OwnerId,
        context: NavigationContext | None = None,
        *,
        force: bool = False,
    ) -> EntityPage:
        """The page of ``kind`` that ``context`` selects, from cache when fresh."""
        self._register_owner(kind, owner_id)
        context = context or self.navigation.default_context
        key = self.keys(kind).list(owner_id, context.to_query_params())
        value = await self.store.fetch(key, force=force)
        return EntityPage.from_payload(value) if value is not None else EntityPage()

    async def fetch_entity(
        self, kind: EntityKind, entity_id: EntityId, *, force: bool = False
    ) -> Entity | None:
        self.register_kind(kind)
        return await self.store.fetch(self.keys(kind).detail(entity_id), force=force)

    async def get_aggregate(
        self, kind: EntityKind, owner_id: OwnerId, *, force_authoritative: bool = False
    ) -> AggregateResult:
        self._register_owner(kind, owner_id)
        return await self.aggregates.get_aggregate(
            kind, owner_id, force_authoritative=force_authoritative
        )

    async def resolve_navigation(
        self,
        owner_id: OwnerId,
        transient: NavigationContext | Mapping[str, Any] | None = None,
    ) -> ResolvedNavigation:
        return await self.navigation.resolve_for_owner(owner_id, transient)

    def siblings_for(
        self,
        kind: EntityKind,
        owner_id: OwnerId,
        entity_id: EntityId,
        context: NavigationContext,
    ) -> SiblingResult:
        return self.siblings.resolve(kind, owner_id, entity_id, context)

    async def navigate(
        self,
        kind: EntityKind,
        owner_id: OwnerId,
        entity_id: EntityId,
        transient: NavigationContext | Mapping[str, Any] | None = None,
        *,
        load: bool = True,
    ) -> tuple[ResolvedNavigation, SiblingResult]:
        """Resolve the browsing context and the entity's neighbours in it.

        With ``load`` the matching page is fetched first when it is not cached.
        """
        resolved = await self.resolve_navigation(owner_id, transient)
        if load:
            key = self.keys(kind).list(owner_id, resolved.context.to_query_params())
            if key not in self.store:
                await self.fetch_list(kind, owner_id, resolved.context)
        return resolved, self.siblings_for(kind, owner_id, entity_id, resolved.context)

    # Lifecycle

    async def drain(self) -> None:
        """Wait for pending mutations, reconcile passes and refetches."""
        await self.mutations.drain()
        await self.store.drain()

    async def shutdown(self) -> None:
        await self.mutations.shutdown()
        await self.store.shutdown()

    async def __aenter__(self) -> CollectionCache:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.shutdown()
