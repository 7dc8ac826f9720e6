"""
In-memory collaborators for kitcache.

``InMemoryEntityStore`` behaves like a small hosted backend: it filters,
sorts and paginates lists, computes aggregate counts and can be told to fail
specific operations, optionally after a simulated latency. Together with
``InMemoryPreferenceStore`` and ``RecordingNotifier`` it backs the test suite
and the ``kitcache demo`` command.
"""

from __future__ import annotations

import asyncio
import copy
from collections import Counter, defaultdict, deque
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from typing import Any

import ulid
from loguru import logger

from ..core.cache_store import EntityPage
from ..core.errors import NotFoundFault
from ..core.interfaces import Severity
from ..core.projections import matches_filters
from ..core.retry import Sleep
from ..datastructures.type_aliases import (
    CategoryCounts,
    Entity,
    EntityId,
    EntityKind,
    EntityPatch,
    OwnerId,
)

class HttpStatusError(Exception):
    """Transport-style error carrying an HTTP status, as API clients raise."""

    def __init__(self, status: int, message: str = "", data: Any = None) -> None:
        super().__init__(message or f"HTTP {status}")
        self.status = status
        self.data = data


def _now() -> str:
    return datetime.now(UTC).isoformat()


class _FaultInjector:
    def __init__(self) -> None:
        self._faults: dict[str, deque[BaseException]] = defaultdict(deque)
        self.calls: Counter[str] = Counter()

    def fail_next(self, operation: str, error: BaseException, times: int = 1) -> None:
        """Make the next ``times`` calls of ``operation`` raise ``error``."""
        self._faults[operation].extend([error] * times)

    def clear_faults(self) -> None:
        self._faults.clear()

    def _check(self, operation: str) -> None:
        self.calls[operation] += 1
        queue = self._faults.get(operation)
        if queue:
            error = queue.popleft()
            logger.debug(f"Injected failure for {operation}: {error!r}")
            raise error


class InMemoryEntityStore(_FaultInjector):
    """Remote entity store kept in process memory."""

    def __init__(
        self,
        *,
        owner_field: str = "user",
        category_field: str = "status",
        latency_seconds: float = 0.0,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        super().__init__()
        self.owner_field = owner_field
        self.category_field = category_field
        self.latency_seconds = latency_seconds
        self.sleep = sleep
        self._entities: dict[EntityKind, dict[EntityId, dict[str, Any]]] = defaultdict(
            dict
        )

    def seed(self, kind: EntityKind, entities: Iterable[Mapping[str, Any]]) -> None:
        for entity in entities:
            self._entities[kind][entity["id"]] = dict(entity)

    def entity(self, kind: EntityKind, entity_id: EntityId) -> dict[str, Any] | None:
        """Direct read of stored state, bypassing latency and fault injection."""
        stored = self._entities[kind].get(entity_id)
        return copy.deepcopy(stored) if stored is not None else None

    def count(self, kind: EntityKind) -> int:
        return len(self._entities[kind])

    async def _enter(self, operation: str) -> None:
        if self.latency_seconds:
            await self.sleep(self.latency_seconds)
        self._check(operation)

    def _get(self, kind: EntityKind, entity_id: EntityId) -> dict[str, Any]:
        try:
            return self._entities[kind][entity_id]
        except KeyError:
            raise NotFoundFault(f"{kind} {entity_id} not found") from None

    # Remote entity store protocol

    async def fetch_entity(self, kind: EntityKind, entity_id: EntityId) -> Entity:
        await self._enter("fetch_entity")
        return copy.deepcopy(self._get(kind, entity_id))

    async def fetch_list(
        self, kind: EntityKind, params: Mapping[str, Any]
    ) -> EntityPage:
        await self._enter("fetch_list")
        owner_id = params.get("owner_id")
        filters = params.get("filters") or {}
        matches = [
            entity
            for entity in self._entities[kind].values()
            if (owner_id is None or entity.get(self.owner_field) == owner_id)
            and matches_filters(entity, filters)
        ]

        sort_field = params.get("sort_field", "last_updated")
        descending = params.get("sort_direction", "desc") == "desc"
        present = [e for e in matches if e.get(sort_field) is not None]
        missing = [e for e in matches if e.get(sort_field) is None]
        present.sort(key=lambda e: (e[sort_field], e["id"]), reverse=descending)
        ordered = present + missing

        page = max(int(params.get("page", 1)), 1)
        page_size = max(int(params.get("page_size", 25)), 1)
        start = (page - 1) * page_size
        items = tuple(copy.deepcopy(e) for e in ordered[start : start + page_size])
        return EntityPage(items=items, total_count=len(ordered))

    async def mutate_entity(
        self, kind: EntityKind, entity_id: EntityId, patch: EntityPatch
    ) -> Entity:
        await self._enter("mutate_entity")
        entity = self._get(kind, entity_id)
        entity.update(copy.deepcopy(dict(patch)))
        entity["last_updated"] = _now()
        return copy.deepcopy(entity)

    async def create_entity(self, kind: EntityKind, data: EntityPatch) -> Entity:
        await self._enter("create_entity")
        now = _now()
        entity = {
            **copy.deepcopy(dict(data)),
            "id": str(ulid.new()).lower(),
            "created": now,
            "last_updated": now,
        }
        self._entities[kind][entity["id"]] = entity
        return copy.deepcopy(entity)

    async def delete_entity(self, kind: EntityKind, entity_id: EntityId) -> None:
        await self._enter("delete_entity")
        self._get(kind, entity_id)
        del self._entities[kind][entity_id]

    async def fetch_aggregate(
        self, kind: EntityKind, owner_id: OwnerId
    ) -> CategoryCounts:
        await self._enter("fetch_aggregate")
        counts: Counter[str] = Counter(
            entity[self.category_field]
            for entity in self._entities[kind].values()
            if entity.get(self.owner_field) == owner_id
            and entity.get(self.category_field) is not None
        )
        return dict(counts)


class InMemoryPreferenceStore(_FaultInjector):
    """Per-user navigation preferences kept in memory."""

    def __init__(self) -> None:
        super().__init__()
        self._preferences: dict[OwnerId, dict[str, Any]] = {}

    async def get_navigation_preference(
        self, user_id: OwnerId
    ) -> Mapping[str, Any] | None:
        self._check("get_navigation_preference")
        preference = self._preferences.get(user_id)
        return copy.deepcopy(preference) if preference is not None else None

    async def save_navigation_preference(
        self, user_id: OwnerId, preference: Mapping[str, Any]
    ) -> Mapping[str, Any]:
        self._check("save_navigation_preference")
        stored = {**copy.deepcopy(dict(preference)), "last_updated": _now()}
        self._preferences[user_id] = stored
        return copy.deepcopy(stored)


class RecordingNotifier:
    """Notification sink that remembers every message."""

    def __init__(self) -> None:
        self.messages: list[tuple[str, Severity]] = []

    def __call__(self, message: str, severity: Severity) -> None:
        self.messages.append((message, severity))

    def by_severity(self, severity: Severity) -> list[str]:
        return [message for message, level in self.messages if level is severity]

    @property
    def last(self) -> tuple[str, Severity] | None:
        return self.messages[-1] if self.messages else None

    def clear(self) -> None:
        self.messages.clear()
