"""Shared datastructure definitions for kitcache."""

from .type_aliases import (
    AttemptNumber,
    CacheKey,
    CategoryCounts,
    DurationSeconds,
    EncodedParams,
    Entity,
    EntityId,
    EntityKind,
    EntityPatch,
    KeySegment,
    MutationId,
    OwnerId,
    Timestamp,
)

__all__ = [
    "AttemptNumber",
    "CacheKey",
    "CategoryCounts",
    "DurationSeconds",
    "EncodedParams",
    "Entity",
    "EntityId",
    "EntityKind",
    "EntityPatch",
    "KeySegment",
    "MutationId",
    "OwnerId",
    "Timestamp",
]
