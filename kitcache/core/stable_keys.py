"""
Deterministic cache keys for kitcache.

Query parameters arrive as loosely-constructed mappings (filters, sort options,
pagination) and must map onto byte-identical cache keys regardless of the order
in which their fields or array members were assembled. ``StableKeyEncoder``
produces that canonical encoding; ``EntityKeys`` builds the hierarchical keys
every other component shares:

    (kind,)                                     everything for one entity kind
    (kind, "list")                              every cached list
    (kind, "list", owner_hash, encoded_params)  one list query for one owner
    (kind, "detail", entity_id)                 one entity
    (kind, "aggregate", owner_hash)             authoritative aggregate counts

Array members are sorted before encoding. Arrays whose order carries meaning
must be named in ``ordered_fields`` so the encoder leaves them alone.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping, Set
from dataclasses import asdict, dataclass, field, is_dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any

from ..datastructures.type_aliases import (
    CacheKey,
    EncodedParams,
    EntityId,
    EntityKind,
    OwnerId,
)

GUEST_OWNER_HASH = "guest"
_BASE36_DIGITS = "0123456789abcdefghijklmnopqrstuvwxyz"


def _sort_rank(value: Any) -> tuple[int, Any]:
    """Total order over stabilized values: null < bool < number < string < other."""
    if value is None:
        return (0, 0)
    if isinstance(value, bool):
        return (1, int(value))
    if isinstance(value, int | float):
        return (2, value)
    if isinstance(value, str):
        return (3, value)
    return (4, json.dumps(value, sort_keys=True, separators=(",", ":")))


@dataclass(frozen=True, slots=True)
class StableKeyEncoder:
    """Canonical JSON encoding of structured query parameters."""

    ordered_fields: frozenset[str] = field(default_factory=frozenset)

    def encode(self, params: Mapping[str, Any]) -> EncodedParams:
        """Encode ``params`` so that equivalent parameter objects collide."""
        return json.dumps(
            self.stabilize(params),
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
        )

    def stabilize(self, value: Any, field_name: str | None = None) -> Any:
        """Return a JSON-ready copy of ``value`` with all ordering normalized."""
        if isinstance(value, Enum):
            return self.stabilize(value.value, field_name)
        if is_dataclass(value) and not isinstance(value, type):
            return self.stabilize(asdict(value), field_name)
        if isinstance(value, Mapping):
            return {
                str(key): self.stabilize(item, str(key))
                for key, item in sorted(value.items(), key=lambda kv: str(kv[0]))
            }
        if isinstance(value, Set):
            return sorted((self.stabilize(item) for item in value), key=_sort_rank)
        if isinstance(value, list | tuple):
            items = [self.stabilize(item) for item in value]
            if field_name is not None and field_name in self.ordered_fields:
                return items
            return sorted(items, key=_sort_rank)
        if value is None or isinstance(value, str | int | float | bool):
            return value
        if isinstance(value, datetime | date):
            return value.isoformat()
        return str(value)


DEFAULT_ENCODER = StableKeyEncoder()


def encode_params(params: Mapping[str, Any]) -> EncodedParams:
    """Encode ``params`` with the default (fully sorting) encoder."""
    return DEFAULT_ENCODER.encode(params)


def _to_base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(_BASE36_DIGITS[remainder])
    return "".join(reversed(digits))


def hash_owner_id(owner_id: OwnerId | None) -> str:
    """Hash an owner id so raw user ids never appear in cache keys or logs.

    Uses a 32-bit rolling hash over UTF-16 code units, rendered in base 36.
    Anonymous owners share the ``guest`` segment.
    """
    if not owner_id or owner_id == GUEST_OWNER_HASH:
        return GUEST_OWNER_HASH

    code_units = memoryview(owner_id.encode("utf-16-le")).cast("H")
    value = 0
    for unit in code_units:
        value = ((value << 5) - value + unit) & 0xFFFFFFFF
    if value >= 0x80000000:
        value -= 0x100000000
    return f"u_{_to_base36(abs(value))}"


def key_matches(key: CacheKey, prefix: CacheKey) -> bool:
    """True when ``prefix`` is a leading segment sequence of ``key``."""
    return len(prefix) <= len(key) and key[: len(prefix)] == prefix


def format_key(key: CacheKey) -> str:
    return ":".join("" if segment is None else str(segment) for segment in key)


def decode_list_params(key: CacheKey) -> dict[str, Any]:
    """Query parameters encoded in the last segment of a list key."""
    if len(key) < 4 or not isinstance(key[-1], str):
        return {}
    try:
        params = json.loads(key[-1])
    except ValueError:
        return {}
    return params if isinstance(params, dict) else {}


@dataclass(frozen=True, slots=True)
class EntityKeys:
    """Hierarchical key factory for one entity kind."""

    kind: EntityKind
    encoder: StableKeyEncoder = DEFAULT_ENCODER

    def all(self) -> CacheKey:
        return (self.kind,)

    def lists(self) -> CacheKey:
        return (self.kind, "list")

    def owner_lists(self, owner_id: OwnerId) -> CacheKey:
        return (self.kind, "list", hash_owner_id(owner_id))

    def list(self, owner_id: OwnerId, params: Mapping[str, Any]) -> CacheKey:
        return (*self.owner_lists(owner_id), self.encoder.encode(params))

    def details(self) -> CacheKey:
        return (self.kind, "detail")

    def detail(self, entity_id: EntityId) -> CacheKey:
        return (self.kind, "detail", entity_id)

    def aggregate(self, owner_id: OwnerId) -> CacheKey:
        return (self.kind, "aggregate", hash_owner_id(owner_id))


def navigation_preference_key(owner_id: OwnerId) -> CacheKey:
    """Key of the persisted navigation preference for ``owner_id``."""
    return ("preferences", "navigation", hash_owner_id(owner_id))


def ordered_encoder(fields: Iterable[str]) -> StableKeyEncoder:
    """Encoder that keeps the array values of ``fields`` in caller order."""
    return StableKeyEncoder(ordered_fields=frozenset(fields))
