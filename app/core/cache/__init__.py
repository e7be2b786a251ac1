# app/core/cache/__init__.py
"""
Bounded-staleness caches for list and dashboard reads.

- ``FreshnessCache``     : one value per key, TTL + per-key single-flight
- ``BatchFreshnessCache``: several keyed fetches joined into one entry
"""
from app.core.cache.batch import BatchCachedResource, BatchFreshnessCache, composite_key
from app.core.cache.freshness import CachedResource, CacheEntry, FreshnessCache

__all__ = [
    "BatchCachedResource",
    "BatchFreshnessCache",
    "CacheEntry",
    "CachedResource",
    "FreshnessCache",
    "composite_key",
]
