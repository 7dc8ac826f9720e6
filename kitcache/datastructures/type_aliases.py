"""
Semantic type aliases for kitcache datastructures.

These aliases keep signatures self-documenting: a ``CacheKey`` is a tuple of
primitive segments, an ``EntityId`` is the backend's record id, and durations
are always expressed in seconds.
"""

from collections.abc import Mapping
from typing import Any

# Time and timestamp types
type Timestamp = float
type DurationSeconds = float

# Identifier types
type EntityId = str
type OwnerId = str
type EntityKind = str
type MutationId = str

# Cache key types
type KeySegment = str | int | float | bool | None
type CacheKey = tuple[KeySegment, ...]
type EncodedParams = str

# Entity payloads
type Entity = Mapping[str, Any]
type EntityPatch = Mapping[str, Any]
type CategoryCounts = dict[str, int]

# Retry types
type AttemptNumber = int
