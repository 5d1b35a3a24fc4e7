"""Content-addressed TTL cache for AI results.

Supports two backends:
1. MongoDB (durable) - shared by every worker, survives restarts
2. In-memory (fallback) - for testing or single-process use

Features:
- At most one entry per (cache_key, content_hash); re-storing identical
  content only refreshes its expiry
- Atomic hit counting on read
- Expiry sweep via cleanup() or a periodic background task
- Every backend failure is logged and treated as a miss / no-op, so the
  primary operation is never affected by the cache
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from bson import ObjectId
from pymongo import ReturnDocument

from ai_gateway.db.mongo import from_mongo_datetime, to_mongo_datetime

logger = logging.getLogger(__name__)

# Default TTL for derived analyses (3 days)
DEFAULT_TTL_HOURS = 72

# Default TTL for raw document extraction results (7 days)
DOCUMENT_TTL_HOURS = 168

# How often to run cleanup (1 hour)
CLEANUP_INTERVAL_SECONDS = 3600

# Collection name for MongoDB storage
CACHE_COLLECTION = "ai_response_cache"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _canonical_json(payload: Any) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def compute_content_hash(payload: Any) -> str:
    """Truncated SHA-256 of a payload's canonical JSON form.

    Args:
        payload: JSON-serializable value (strings are hashed as-is).

    Returns:
        32-character lowercase hex digest.
    """
    text = payload if isinstance(payload, str) else _canonical_json(payload)
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:32]


def compute_cache_key(function_name: str, caller_id: str, input_data: Any) -> str:
    """Deterministic cache key for a (function, caller, input) triple.

    Args:
        function_name: Owning function or pipeline name.
        caller_id: Identity of the caller; only its first 8 chars appear in clear.
        input_data: Request input (string, bytes or JSON-serializable value).

    Returns:
        Key of the form ``{function}_{caller[:8]}_{digest}``.
    """
    if isinstance(input_data, bytes):
        input_digest = hashlib.sha256(input_data).hexdigest()
    elif isinstance(input_data, str):
        input_digest = input_data
    else:
        input_digest = _canonical_json(input_data)
    combined = f"{function_name}:{caller_id}:{input_digest}"
    digest = hashlib.sha256(combined.encode("utf-8")).hexdigest()[:24]
    return f"{function_name}_{caller_id[:8]}_{digest}"


@dataclass
class CacheEntry:
    """One cached payload."""

    cache_key: str
    content_hash: str
    function_name: str
    response_data: Any
    provider: str
    model: str
    tokens_used: int
    created_at: datetime
    expires_at: datetime
    hit_count: int = 0
    last_accessed_at: datetime | None = None
    # Last insert or identical-content refresh; orders entries sharing a key
    stored_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass(frozen=True)
class CacheStats:
    """Aggregate figures over live entries."""

    total_entries: int = 0
    total_hits: int = 0
    hit_rate: float = 0.0
    oldest_entry: datetime | None = None
    newest_entry: datetime | None = None

    @classmethod
    def from_entries(cls, hits_and_created: list[tuple[int, datetime]]) -> CacheStats:
        if not hits_and_created:
            return cls()
        total_entries = len(hits_and_created)
        total_hits = sum(hits for hits, _ in hits_and_created)
        created = sorted(c for _, c in hits_and_created)
        # Every entry began life as one miss, so hits + entries approximates lookups
        hit_rate = total_hits / (total_hits + total_entries) * 100
        return cls(
            total_entries=total_entries,
            total_hits=total_hits,
            hit_rate=round(hit_rate, 2),
            oldest_entry=created[0],
            newest_entry=created[-1],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_entries": self.total_entries,
            "total_hits": self.total_hits,
            "hit_rate": self.hit_rate,
            "oldest_entry": self.oldest_entry.isoformat() if self.oldest_entry else None,
            "newest_entry": self.newest_entry.isoformat() if self.newest_entry else None,
        }


class BaseCacheStore(ABC):
    """Abstract base class for cache stores.

    Public methods never raise: backend errors are logged and reported as a
    miss, ``False`` or zero. Subclasses implement the ``_``-prefixed hooks.
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self._clock = clock
        self._cleanup_task: Optional[asyncio.Task] = None

    async def start_cleanup_task(self) -> None:
        """Start the background expiry sweep."""
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())
            logger.info("Cache cleanup task started")

    async def stop_cleanup_task(self) -> None:
        """Stop the background expiry sweep."""
        if self._cleanup_task and not self._cleanup_task.done():
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            logger.info("Cache cleanup task stopped")

    async def _cleanup_loop(self) -> None:
        """Periodically delete expired entries."""
        while True:
            try:
                await asyncio.sleep(CLEANUP_INTERVAL_SECONDS)
                await self.cleanup()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in cache cleanup loop: {e}")

    async def get(self, cache_key: str) -> Optional[Any]:
        """Return the most recently stored live payload for a key, counting the hit."""
        try:
            entry = await self._get(cache_key, self._clock())
        except Exception as e:
            logger.warning(f"Cache read failed for {cache_key}, treating as miss: {e}")
            return None

        if entry is None:
            logger.debug(f"Cache MISS for {cache_key}")
            return None

        logger.info(
            f"Cache HIT for {cache_key}",
            extra={"cache_key": cache_key, "function_name": entry.function_name, "hit_count": entry.hit_count},
        )
        return entry.response_data

    async def set(
        self,
        cache_key: str,
        payload: Any,
        *,
        function_name: str,
        ttl_hours: float = DEFAULT_TTL_HOURS,
        provider: str = "unknown",
        model: str = "unknown",
        tokens_used: int = 0,
        content_hash: str | None = None,
    ) -> bool:
        """Store a payload, or refresh the expiry of an identical entry.

        Returns:
            True if the payload is now cached.
        """
        now = self._clock()
        try:
            entry = CacheEntry(
                cache_key=cache_key,
                content_hash=content_hash or compute_content_hash(payload),
                function_name=function_name,
                response_data=payload,
                provider=provider,
                model=model,
                tokens_used=tokens_used,
                created_at=now,
                expires_at=now + timedelta(hours=ttl_hours),
                hit_count=0,
                last_accessed_at=None,
                stored_at=now,
            )
            inserted = await self._set(entry)
        except Exception as e:
            logger.warning(f"Cache write failed for {cache_key}: {e}")
            return False

        if inserted:
            logger.info(f"Cached {cache_key} (expires in {ttl_hours}h)")
        else:
            logger.debug(f"Refreshed expiry of identical cache entry {cache_key}")
        return True

    async def invalidate(self, cache_key: str) -> int:
        """Delete every entry for a key. Returns the count removed."""
        try:
            count = await self._invalidate(cache_key)
        except Exception as e:
            logger.warning(f"Cache invalidation failed for {cache_key}: {e}")
            return 0
        logger.info(f"Invalidated {count} cache entries for {cache_key}")
        return count

    async def invalidate_by_function(self, function_name: str) -> int:
        """Delete every entry owned by a function. Returns the count removed."""
        try:
            count = await self._invalidate_by_function(function_name)
        except Exception as e:
            logger.warning(f"Cache invalidation failed for function {function_name}: {e}")
            return 0
        logger.info(f"Invalidated {count} cache entries for function {function_name}")
        return count

    async def cleanup(self) -> int:
        """Delete expired entries. Returns the count removed."""
        try:
            count = await self._cleanup(self._clock())
        except Exception as e:
            logger.warning(f"Cache cleanup failed: {e}")
            return 0
        if count:
            logger.info(f"Removed {count} expired cache entries")
        return count

    async def get_stats(self) -> CacheStats:
        """Aggregate statistics over live entries."""
        try:
            return CacheStats.from_entries(await self._live_hits_and_created(self._clock()))
        except Exception as e:
            logger.warning(f"Cache stats failed: {e}")
            return CacheStats()

    @abstractmethod
    async def _get(self, cache_key: str, now: datetime) -> Optional[CacheEntry]:
        pass

    @abstractmethod
    async def _set(self, entry: CacheEntry) -> bool:
        """Insert, or refresh expiry on (key, hash) match. True if inserted."""
        pass

    @abstractmethod
    async def _invalidate(self, cache_key: str) -> int:
        pass

    @abstractmethod
    async def _invalidate_by_function(self, function_name: str) -> int:
        pass

    @abstractmethod
    async def _cleanup(self, now: datetime) -> int:
        pass

    @abstractmethod
    async def _live_hits_and_created(self, now: datetime) -> list[tuple[int, datetime]]:
        pass


class InMemoryCacheStore(BaseCacheStore):
    """In-memory cache store.

    Thread-safe via asyncio locks for concurrent access.
    Entries are lost on server restart. The dict is kept in storage order:
    a refresh moves its entry to the end.
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        super().__init__(clock)
        self._entries: dict[tuple[str, str], CacheEntry] = {}
        self._lock = asyncio.Lock()

    async def _get(self, cache_key: str, now: datetime) -> Optional[CacheEntry]:
        async with self._lock:
            live = [
                entry for (key, _), entry in self._entries.items()
                if key == cache_key and not entry.is_expired(now)
            ]
            if not live:
                return None
            entry = live[-1]
            entry.hit_count += 1
            entry.last_accessed_at = now
            return replace(entry)

    async def _set(self, entry: CacheEntry) -> bool:
        async with self._lock:
            key = (entry.cache_key, entry.content_hash)
            existing = self._entries.pop(key, None)
            if existing is not None:
                existing.expires_at = entry.expires_at
                existing.stored_at = entry.stored_at
                self._entries[key] = existing
                return False
            self._entries[key] = entry
            return True

    async def _invalidate(self, cache_key: str) -> int:
        async with self._lock:
            doomed = [k for k in self._entries if k[0] == cache_key]
            for k in doomed:
                del self._entries[k]
            return len(doomed)

    async def _invalidate_by_function(self, function_name: str) -> int:
        async with self._lock:
            doomed = [k for k, e in self._entries.items() if e.function_name == function_name]
            for k in doomed:
                del self._entries[k]
            return len(doomed)

    async def _cleanup(self, now: datetime) -> int:
        async with self._lock:
            doomed = [k for k, e in self._entries.items() if e.is_expired(now)]
            for k in doomed:
                del self._entries[k]
            return len(doomed)

    async def _live_hits_and_created(self, now: datetime) -> list[tuple[int, datetime]]:
        async with self._lock:
            return [(e.hit_count, e.created_at) for e in self._entries.values() if not e.is_expired(now)]

    def __len__(self) -> int:
        """Return total number of entries, expired included."""
        return len(self._entries)


class MongoCacheStore(BaseCacheStore):
    """MongoDB-backed cache store.

    A unique (cache_key, content_hash) index backs the dedupe rule; hit
    counting uses find_one_and_update so concurrent readers never lose
    increments.
    """

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        super().__init__(clock)
        self._index_created = False

    async def start_cleanup_task(self) -> None:
        """Ensure indexes, then start the periodic sweep."""
        await self._ensure_indexes()
        await super().start_cleanup_task()

    async def _get_collection(self):
        """Get the MongoDB collection."""
        from ai_gateway.db.mongo import get_database
        db = await get_database()
        return db[CACHE_COLLECTION]

    async def _ensure_indexes(self) -> None:
        """Create the dedupe, lookup and TTL indexes if missing."""
        if self._index_created:
            return

        try:
            collection = await self._get_collection()
            await collection.create_index([("cache_key", 1), ("content_hash", 1)], unique=True)
            await collection.create_index("function_name")
            await collection.create_index("expires_at", expireAfterSeconds=0, background=True)
            self._index_created = True
            logger.info("MongoDB cache indexes created")
        except Exception as e:
            logger.warning(f"Failed to create MongoDB cache indexes: {e}")

    def _doc_to_entry(self, doc: dict) -> CacheEntry:
        return CacheEntry(
            cache_key=doc["cache_key"],
            content_hash=doc["content_hash"],
            function_name=doc["function_name"],
            response_data=doc.get("response_data"),
            provider=doc.get("provider", "unknown"),
            model=doc.get("model", "unknown"),
            tokens_used=doc.get("tokens_used", 0),
            created_at=from_mongo_datetime(doc["created_at"]),
            expires_at=from_mongo_datetime(doc["expires_at"]),
            hit_count=doc.get("hit_count", 0),
            last_accessed_at=from_mongo_datetime(doc.get("last_accessed_at")),
            stored_at=from_mongo_datetime(doc.get("stored_at", doc["created_at"])),
        )

    async def _get(self, cache_key: str, now: datetime) -> Optional[CacheEntry]:
        collection = await self._get_collection()
        doc = await collection.find_one_and_update(
            {"cache_key": cache_key, "expires_at": {"$gt": to_mongo_datetime(now)}},
            {"$inc": {"hit_count": 1}, "$set": {"last_accessed_at": to_mongo_datetime(now)}},
            # BSON dates hold milliseconds; the revision id breaks same-instant ties
            sort=[("stored_at", -1), ("revision", -1)],
            return_document=ReturnDocument.AFTER,
        )
        return self._doc_to_entry(doc) if doc else None

    async def _set(self, entry: CacheEntry) -> bool:
        await self._ensure_indexes()
        collection = await self._get_collection()
        result = await collection.update_one(
            {"cache_key": entry.cache_key, "content_hash": entry.content_hash},
            {
                "$set": {
                    "expires_at": to_mongo_datetime(entry.expires_at),
                    "stored_at": to_mongo_datetime(entry.stored_at),
                    "revision": ObjectId(),
                },
                "$setOnInsert": {
                    "function_name": entry.function_name,
                    "response_data": entry.response_data,
                    "provider": entry.provider,
                    "model": entry.model,
                    "tokens_used": entry.tokens_used,
                    "created_at": to_mongo_datetime(entry.created_at),
                    "hit_count": 0,
                    "last_accessed_at": None,
                },
            },
            upsert=True,
        )
        return result.upserted_id is not None

    async def _invalidate(self, cache_key: str) -> int:
        collection = await self._get_collection()
        result = await collection.delete_many({"cache_key": cache_key})
        return result.deleted_count

    async def _invalidate_by_function(self, function_name: str) -> int:
        collection = await self._get_collection()
        result = await collection.delete_many({"function_name": function_name})
        return result.deleted_count

    async def _cleanup(self, now: datetime) -> int:
        collection = await self._get_collection()
        result = await collection.delete_many({"expires_at": {"$lte": to_mongo_datetime(now)}})
        return result.deleted_count

    async def _live_hits_and_created(self, now: datetime) -> list[tuple[int, datetime]]:
        collection = await self._get_collection()
        cursor = collection.find(
            {"expires_at": {"$gt": to_mongo_datetime(now)}},
            {"hit_count": 1, "created_at": 1},
        )
        return [
            (doc.get("hit_count", 0), from_mongo_datetime(doc["created_at"]))
            async for doc in cursor
        ]


# Module-level singleton instance
_cache_store: Optional[BaseCacheStore] = None


def get_cache_store() -> BaseCacheStore:
    """Get the default cache store singleton.

    Uses MongoDB unless CACHE_STORE_BACKEND=memory.
    """
    global _cache_store
    if _cache_store is None:
        use_mongo = os.getenv("CACHE_STORE_BACKEND", "mongo").lower() == "mongo"
        if use_mongo:
            _cache_store = MongoCacheStore()
            logger.info("Using MongoDB cache store")
        else:
            _cache_store = InMemoryCacheStore()
            logger.info("Using in-memory cache store")
    return _cache_store


def set_cache_store(store: Optional[BaseCacheStore]) -> None:
    """Set the cache store instance (for testing)."""
    global _cache_store
    _cache_store = store
