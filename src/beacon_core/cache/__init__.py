"""In-process TTL response cache.

The cache serves two read paths:
  - ``get`` for normal reads. Expired entries are removed on access.
  - ``get_stale`` for last-resort fallback after a failed call. Results are
    tagged ``stale`` once they outlive their TTL.
"""

from beacon_core.cache.entry import CachedValue, CacheEntry, CacheStats
from beacon_core.cache.keys import (
    build_cache_key,
    fnv1a_32,
    hashed_cache_key,
    serialize_body,
)
from beacon_core.cache.response_cache import (
    DEFAULT_MAX_ENTRIES,
    DEFAULT_TTL_SECONDS,
    ResponseCache,
)
from beacon_core.cache.storage import AbstractCacheStore, InMemoryCacheStore

__all__ = [
    "DEFAULT_MAX_ENTRIES",
    "DEFAULT_TTL_SECONDS",
    "AbstractCacheStore",
    "CacheEntry",
    "CacheStats",
    "CachedValue",
    "InMemoryCacheStore",
    "ResponseCache",
    "build_cache_key",
    "fnv1a_32",
    "hashed_cache_key",
    "serialize_body",
]
