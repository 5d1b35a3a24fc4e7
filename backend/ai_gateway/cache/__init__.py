"""Response cache for AI results."""

from .store import (
    DEFAULT_TTL_HOURS,
    DOCUMENT_TTL_HOURS,
    BaseCacheStore,
    CacheEntry,
    CacheStats,
    InMemoryCacheStore,
    MongoCacheStore,
    compute_cache_key,
    compute_content_hash,
    get_cache_store,
    set_cache_store,
)

__all__ = [
    "BaseCacheStore",
    "CacheEntry",
    "CacheStats",
    "InMemoryCacheStore",
    "MongoCacheStore",
    "compute_cache_key",
    "compute_content_hash",
    "get_cache_store",
    "set_cache_store",
    "DEFAULT_TTL_HOURS",
    "DOCUMENT_TTL_HOURS",
]
