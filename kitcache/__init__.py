"""
kitcache - optimistic cache consistency engine for collection trackers

Keeps a client-side cache of remote entities consistent while mutations are
applied optimistically:

- **core.cache_store**: keyed store with staleness, eviction and in-flight fetches
- **core.mutations**: snapshot, speculative apply, commit or rollback, reconcile
- **core.aggregates**: category counts derived from cached pages when coverage allows
- **core.navigation**: browsing context resolution and previous/next lookup

## Quick Start

```python
from kitcache import CollectionCache
from kitcache.backends.memory import InMemoryEntityStore

async with CollectionCache(InMemoryEntityStore()) as cache:
    page = await cache.fetch_list("projects", "user-1")
    outcome = await cache.mutations.update_status("projects", "p1", "completed")
```
"""

from .config import KitCacheSettings
from .core import (
    AggregateResult,
    AggregateSource,
    CacheStore,
    CollectionCache,
    Committed,
    DerivedAggregateEngine,
    EntityKeys,
    EntityPage,
    NavigationContext,
    NavigationContextResolver,
    OptimisticMutationCoordinator,
    Pending,
    RolledBack,
    SiblingResolver,
    StableKeyEncoder,
)

__version__ = "0.1.0"

__all__ = [
    "AggregateResult",
    "AggregateSource",
    "CacheStore",
    "CollectionCache",
    "Committed",
    "DerivedAggregateEngine",
    "EntityKeys",
    "EntityPage",
    "KitCacheSettings",
    "NavigationContext",
    "NavigationContextResolver",
    "OptimisticMutationCoordinator",
    "Pending",
    "RolledBack",
    "SiblingResolver",
    "StableKeyEncoder",
]
