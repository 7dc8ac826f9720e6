"""
Collaborator interfaces consumed by kitcache.

The engine never talks to a transport directly. It is handed objects that
satisfy these protocols: a remote entity store, a persisted preference store
and a notification sink. ``kitcache.backends.memory`` provides in-memory
implementations of all three.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from ..datastructures.type_aliases import (
    CategoryCounts,
    Entity,
    EntityId,
    EntityKind,
    EntityPatch,
    OwnerId,
)

if TYPE_CHECKING:
    from .cache_store import EntityPage
    from .navigation import NavigationContext


class Severity(Enum):
    """Severity attached to a notification."""

    SUCCESS = "success"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


type NotificationSink = Callable[[str, Severity], None]


@runtime_checkable
class RemoteEntityStore(Protocol):
    """Backend holding the entities. All methods raise on failure."""

    async def fetch_entity(self, kind: EntityKind, entity_id: EntityId) -> Entity: ...

    async def fetch_list(
        self, kind: EntityKind, params: Mapping[str, Any]
    ) -> EntityPage: ...

    async def mutate_entity(
        self, kind: EntityKind, entity_id: EntityId, patch: EntityPatch
    ) -> Entity: ...

    async def create_entity(self, kind: EntityKind, data: EntityPatch) -> Entity: ...

    async def delete_entity(self, kind: EntityKind, entity_id: EntityId) -> None: ...

    async def fetch_aggregate(
        self, kind: EntityKind, owner_id: OwnerId
    ) -> CategoryCounts: ...


@runtime_checkable
class PreferenceStore(Protocol):
    """Per-user persisted preferences."""

    async def get_navigation_preference(
        self, user_id: OwnerId
    ) -> NavigationContext | Mapping[str, Any] | None: ...

    async def save_navigation_preference(
        self, user_id: OwnerId, preference: Mapping[str, Any]
    ) -> Mapping[str, Any]: ...


def discard_notification(message: str, severity: Severity) -> None:
    """Notification sink that drops everything."""
