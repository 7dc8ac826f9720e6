"""
kitcache core module

Cache store, fault taxonomy, retry policy, optimistic mutations, derived
aggregates and navigation resolution.
"""

from .aggregates import (
    AggregateResult,
    AggregateSnapshot,
    AggregateSource,
    AggregateThresholds,
    DerivedAggregateEngine,
)
from .cache_store import CacheEntry, CachePolicy, CacheStore, EntityPage, EntryKind
from .engine import CollectionCache
from .errors import (
    ClientFault,
    KitCacheError,
    ReconciliationFault,
    RemoteFault,
    TransientFault,
    classify_error,
    describe_fault,
)
from .mutations import (
    Committed,
    MutationHandle,
    MutationRequest,
    OptimisticMutationCoordinator,
    Pending,
    RolledBack,
)
from .navigation import (
    ContextSource,
    NavigationContext,
    NavigationContextResolver,
    SiblingResolver,
    SiblingResult,
)
from .retry import RetryClassifier, RetryConfiguration, call_with_retry
from .stable_keys import EntityKeys, StableKeyEncoder, hash_owner_id

__all__ = [
    "AggregateResult",
    "AggregateSnapshot",
    "AggregateSource",
    "AggregateThresholds",
    "CacheEntry",
    "CachePolicy",
    "CacheStore",
    "ClientFault",
    "CollectionCache",
    "Committed",
    "ContextSource",
    "DerivedAggregateEngine",
    "EntityKeys",
    "EntityPage",
    "EntryKind",
    "KitCacheError",
    "MutationHandle",
    "MutationRequest",
    "NavigationContext",
    "NavigationContextResolver",
    "OptimisticMutationCoordinator",
    "Pending",
    "ReconciliationFault",
    "RemoteFault",
    "RetryClassifier",
    "RetryConfiguration",
    "RolledBack",
    "SiblingResolver",
    "SiblingResult",
    "StableKeyEncoder",
    "TransientFault",
    "call_with_retry",
    "classify_error",
    "describe_fault",
    "hash_owner_id",
]
