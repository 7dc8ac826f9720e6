"""
Navigation context resolution and sibling lookup.

A detail view needs to know which browsing context (filters, sort, page) the
user came from so it can offer previous/next links. The context is resolved
through a fixed priority chain:

1. transient context handed over by the caller (in-app navigation),
2. persisted context stored per user (direct links, bookmarks),
3. the hard-coded default.

``SiblingResolver`` then looks up the cached page produced by exactly that
context. Pages are only valid for the context that produced them, so the
lookup uses the full encoded context as key and never falls back to a page
cached for different filters, sort or page.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Any

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..datastructures.type_aliases import Entity, EntityId, EntityKind, OwnerId
from .cache_store import CachePolicy, CacheStore, EntityPage, EntryKind
from .errors import RemoteFault, classify_error
from .interfaces import PreferenceStore
from .stable_keys import (
    DEFAULT_ENCODER,
    EntityKeys,
    StableKeyEncoder,
    format_key,
    navigation_preference_key,
)


def freeze_filters(filters: Mapping[str, Any]) -> Mapping[str, Any]:
    """Read-only copy of ``filters`` with sequence values turned into tuples."""
    return MappingProxyType(
        {
            name: tuple(value) if isinstance(value, list | tuple | set) else value
            for name, value in filters.items()
        }
    )


DEFAULT_FILTERS: Mapping[str, Any] = freeze_filters(
    {
        "status": "all",
        "company": "all",
        "artist": "all",
        "drill_shape": "all",
        "year_finished": "all",
        "include_mini_kits": True,
        "search_term": "",
        "selected_tags": (),
    }
)


class SortDirection(Enum):
    ASC = "asc"
    DESC = "desc"


class ContextSource(Enum):
    """Where a resolved navigation context came from."""

    TRANSIENT = "transient"
    PERSISTED = "persisted"
    DEFAULT = "default"


@dataclass(frozen=True, slots=True)
class NavigationContext:
    """Filter, sort and pagination state of one list view."""

    filters: Mapping[str, Any] = field(default_factory=lambda: DEFAULT_FILTERS)
    sort_field: str = "last_updated"
    sort_direction: SortDirection = SortDirection.DESC
    page: int = 1
    page_size: int = 25
    # Transient UI state; excluded from cache keys.
    scroll_offset: float | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "filters", freeze_filters(self.filters))
        if self.page < 1:
            raise ValueError("page must be >= 1")
        if self.page_size < 1:
            raise ValueError("page_size must be >= 1")

    def to_query_params(self) -> dict[str, Any]:
        return {
            "filters": {
                name: list(value) if isinstance(value, tuple) else value
                for name, value in self.filters.items()
            },
            "sort_field": self.sort_field,
            "sort_direction": self.sort_direction.value,
            "page": self.page,
            "page_size": self.page_size,
        }

    def with_page(self, page: int) -> NavigationContext:
        return replace(self, page=page, scroll_offset=None)

    def to_preference(self) -> dict[str, Any]:
        return NavigationPreference(
            filters=dict(self.filters),
            sort_field=self.sort_field,
            sort_direction=self.sort_direction,
            page=self.page,
            page_size=self.page_size,
            scroll_offset=self.scroll_offset,
        ).model_dump(mode="json", by_alias=True)

    @classmethod
    def from_preference(cls, data: Mapping[str, Any]) -> NavigationContext:
        """Build a context from a persisted (camelCase or snake_case) payload.

        Missing filters are filled in from ``DEFAULT_FILTERS``.
        """
        model = NavigationPreference.model_validate(dict(data))
        return cls(
            filters={**DEFAULT_FILTERS, **model.filters},
            sort_field=model.sort_field,
            sort_direction=model.sort_direction,
            page=model.page,
            page_size=model.page_size,
            scroll_offset=model.scroll_offset,
        )


class NavigationPreference(BaseModel):
    """Wire shape of a persisted navigation context."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    filters: dict[str, Any] = Field(default_factory=dict)
    sort_field: str = Field(default="last_updated", alias="sortField")
    sort_direction: SortDirection = Field(
        default=SortDirection.DESC, alias="sortDirection"
    )
    page: int = Field(default=1, alias="currentPage", ge=1)
    page_size: int = Field(default=25, alias="pageSize", ge=1)
    scroll_offset: float | None = Field(default=None, alias="scrollPosition")


DEFAULT_NAVIGATION_CONTEXT = NavigationContext()


def coerce_context(
    value: NavigationContext | Mapping[str, Any] | None,
) -> NavigationContext | None:
    """Normalize a context candidate; empty candidates become ``None``."""
    if value is None:
        return None
    if isinstance(value, NavigationContext):
        return value
    if not value:
        return None
    return NavigationContext.from_preference(value)


@dataclass(frozen=True, slots=True)
class ResolvedNavigation:
    context: NavigationContext
    source: ContextSource
    fallback_error: RemoteFault | None = None


class NavigationContextResolver:
    """Resolves the active navigation context through the priority chain."""

    def __init__(
        self,
        store: CacheStore | None = None,
        preferences: PreferenceStore | None = None,
        *,
        default_context: NavigationContext = DEFAULT_NAVIGATION_CONTEXT,
        preference_policy: CachePolicy | None = None,
    ) -> None:
        self.store = store
        self.preferences = preferences
        self.default_context = default_context
        self.preference_policy = preference_policy

    def resolve(
        self,
        transient: NavigationContext | Mapping[str, Any] | None = None,
        persisted: NavigationContext | Mapping[str, Any] | None = None,
        default: NavigationContext | None = None,
    ) -> ResolvedNavigation:
        """Pick the first non-empty context; performs no I/O and no caching."""
        context = coerce_context(transient)
        if context is not None:
            logger.debug("Using transient navigation context")
            return ResolvedNavigation(context, ContextSource.TRANSIENT)

        context = coerce_context(persisted)
        if context is not None:
            logger.debug("Using persisted navigation context")
            return ResolvedNavigation(context, ContextSource.PERSISTED)

        logger.debug("Using default navigation context")
        return ResolvedNavigation(
            default or self.default_context, ContextSource.DEFAULT
        )

    async def load_persisted(self, owner_id: OwnerId) -> NavigationContext | None:
        """Read the persisted context through the cache store."""
        if self.store is None or self.preferences is None or not owner_id:
            return None

        preferences = self.preferences

        async def _fetch(_key: Any) -> Any:
            return await preferences.get_navigation_preference(owner_id)

        value = await self.store.fetch(
            navigation_preference_key(owner_id),
            _fetch,
            kind=EntryKind.DETAIL,
            policy=self.preference_policy,
        )
        return coerce_context(value)

    async def resolve_for_owner(
        self,
        owner_id: OwnerId,
        transient: NavigationContext | Mapping[str, Any] | None = None,
    ) -> ResolvedNavigation:
        """Resolve for ``owner_id``, loading the persisted context only if needed."""
        if coerce_context(transient) is not None:
            return self.resolve(transient)

        try:
            persisted = await self.load_persisted(owner_id)
        except (RemoteFault, ValidationError, OSError) as e:
            fault = classify_error(e) if not isinstance(e, ValidationError) else None
            logger.warning(f"Could not load persisted navigation context: {e}")
            resolved = self.resolve(None, None)
            return ResolvedNavigation(resolved.context, resolved.source, fault)

        return self.resolve(None, persisted)


@dataclass(frozen=True, slots=True)
class SiblingResult:
    """Previous/next entities around the current one in its browsing order."""

    previous: Entity | None = None
    next: Entity | None = None
    has_previous: bool = False
    has_next: bool = False
    current_index: int | None = None
    total_count: int = 0
    is_loading: bool = False
    previous_page_context: NavigationContext | None = None
    next_page_context: NavigationContext | None = None


class SiblingResolver:
    """Finds an entity's neighbours in the cached page for a given context."""

    def __init__(
        self, store: CacheStore, *, encoder: StableKeyEncoder = DEFAULT_ENCODER
    ) -> None:
        self.store = store
        self.encoder = encoder

    def resolve(
        self,
        kind: EntityKind,
        owner_id: OwnerId,
        current_id: EntityId,
        context: NavigationContext,
    ) -> SiblingResult:
        if not owner_id or not current_id:
            return SiblingResult()

        key = EntityKeys(kind, self.encoder).list(owner_id, context.to_query_params())
        entry = self.store.get(key)
        if entry is None or entry.kind is not EntryKind.LIST:
            logger.debug(f"No cached page for sibling lookup at {format_key(key)}")
            return SiblingResult(is_loading=True)

        page = EntityPage.from_payload(entry.value)
        index = page.index_of(current_id)
        if index is None:
            logger.warning(f"Entity {current_id} not found in cached page")
            return SiblingResult(total_count=page.total_count)

        previous = page.items[index - 1] if index > 0 else None
        following = page.items[index + 1] if index < len(page.items) - 1 else None

        last_page = math.ceil(page.total_count / context.page_size)
        has_previous = previous is not None or context.page > 1
        has_next = following is not None or context.page < last_page

        return SiblingResult(
            previous=previous,
            next=following,
            has_previous=has_previous,
            has_next=has_next,
            current_index=index,
            total_count=page.total_count,
            previous_page_context=(
                context.with_page(context.page - 1)
                if previous is None and has_previous
                else None
            ),
            next_page_context=(
                context.with_page(context.page + 1)
                if following is None and has_next
                else None
            ),
        )
