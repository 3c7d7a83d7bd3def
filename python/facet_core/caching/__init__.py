"""Multi-tier cache: local LRU, shared TTL store and predictive hints."""

from facet_core.caching.hierarchy import (
    CacheAnalytics,
    CacheContext,
    CacheHierarchy,
    CacheLookup,
    CacheStrategy,
    WarmingItem,
    WarmingReport,
    build_key,
)
from facet_core.caching.shared_store import InMemorySharedStore, RedisSharedStore, SharedStore
from facet_core.caching.tiers import CacheEntry, CacheTier, LocalTier, PredictiveTier, SharedTier

__all__ = [
    "CacheAnalytics",
    "CacheContext",
    "CacheEntry",
    "CacheHierarchy",
    "CacheLookup",
    "CacheStrategy",
    "CacheTier",
    "InMemorySharedStore",
    "LocalTier",
    "PredictiveTier",
    "RedisSharedStore",
    "SharedStore",
    "SharedTier",
    "WarmingItem",
    "WarmingReport",
    "build_key",
]
