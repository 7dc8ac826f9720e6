"""
Pure value projections used by optimistic mutations.

Each helper takes a cached value and returns a new one; cached values are never
modified in place, so a snapshot taken before a speculative write stays intact.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any, Final

from ..datastructures.type_aliases import Entity, EntityId, EntityPatch
from .cache_store import EntityPage

COMPLETED_STATUS: Final = "completed"


class _Marker:
    __slots__ = ("name",)

    def __init__(self, name: str) -> None:
        self.name = name

    def __repr__(self) -> str:
        return self.name


REMOVED: Final = _Marker("REMOVED")
UNCHANGED: Final = _Marker("UNCHANGED")
# Leave the value alone but mark the entry stale.
STALE: Final = _Marker("STALE")

ANY_VALUE: Final = "all"
# Filters that test a differently named entity field.
FILTER_FIELDS: Final = {"search_term": "title", "selected_tags": "tags"}


def merge_entity(entity: Entity, patch: EntityPatch) -> dict[str, Any]:
    return {**entity, **patch}


def status_change_patch(
    current_status: str | None, new_status: str, today: str
) -> dict[str, Any]:
    """Patch for a status change, keeping ``date_completed`` consistent."""
    patch: dict[str, Any] = {"status": new_status}
    if new_status == COMPLETED_STATUS:
        patch["date_completed"] = today
    elif current_status == COMPLETED_STATUS:
        patch["date_completed"] = None
    return patch


def map_page_items(
    page: EntityPage, entity_id: EntityId, fn: Callable[[Entity], Entity]
) -> EntityPage | _Marker:
    """Apply ``fn`` to the item with ``entity_id``; UNCHANGED if it is absent."""
    if not page.contains(entity_id):
        return UNCHANGED
    items = tuple(
        fn(item) if item.get("id") == entity_id else item for item in page.items
    )
    return EntityPage(items=items, total_count=page.total_count)


def merge_into_page(
    page: EntityPage, entity_id: EntityId, patch: EntityPatch
) -> EntityPage | _Marker:
    return map_page_items(page, entity_id, lambda item: merge_entity(item, patch))


def replace_in_page(
    page: EntityPage, entity_id: EntityId, entity: Entity
) -> EntityPage | _Marker:
    return map_page_items(page, entity_id, lambda _item: dict(entity))


def remove_from_page(page: EntityPage, entity_id: EntityId) -> EntityPage | _Marker:
    if not page.contains(entity_id):
        return UNCHANGED
    items = tuple(item for item in page.items if item.get("id") != entity_id)
    return EntityPage(items=items, total_count=max(0, page.total_count - 1))


def prepend_to_page(
    page: EntityPage, entity: Entity, page_size: int | None = None
) -> EntityPage:
    """Put ``entity`` first; items pushed past ``page_size`` drop off the page."""
    items = (dict(entity), *page.items)
    if page_size is not None:
        items = items[:page_size]
    return EntityPage(items=items, total_count=page.total_count + 1)


def merge_many_into_page(
    page: EntityPage, patches: Mapping[EntityId, EntityPatch]
) -> EntityPage | _Marker:
    if not any(page.contains(entity_id) for entity_id in patches):
        return UNCHANGED
    items = tuple(
        merge_entity(item, patches[item["id"]]) if item.get("id") in patches else item
        for item in page.items
    )
    return EntityPage(items=items, total_count=page.total_count)


def _is_open_filter(expected: Any) -> bool:
    if isinstance(expected, list | tuple):
        return not expected
    return expected in (None, "", ANY_VALUE)


def matches_filters(entity: Entity, filters: Mapping[str, Any]) -> bool:
    """Whether ``entity`` belongs in a list built with ``filters``."""
    for name, expected in filters.items():
        if _is_open_filter(expected):
            continue
        if name == "search_term":
            if str(expected).lower() not in str(entity.get("title", "")).lower():
                return False
        elif name == "selected_tags":
            if not set(expected) <= set(entity.get("tags", ())):
                return False
        elif name == "include_mini_kits":
            if not expected and entity.get("kit_category") == "mini":
                return False
        elif entity.get(name) != expected:
            return False
    return True


def filters_decidable(entity: Entity, filters: Mapping[str, Any]) -> bool:
    """False when a filter tests a field ``entity`` does not carry yet."""
    return all(
        _is_open_filter(expected)
        or name == "include_mini_kits"
        or FILTER_FIELDS.get(name, name) in entity
        for name, expected in filters.items()
    )
