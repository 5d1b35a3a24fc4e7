"""Unit tests for cache store implementations.

Tests cover:
- Key and content hashing
- InMemoryCacheStore operations
- MongoCacheStore operations
- TTL expiry and cleanup
- Dedupe on (cache_key, content_hash)
- Failures degrade to a miss
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
from mongomock_motor import AsyncMongoMockClient

from ai_gateway.cache.store import (
    CACHE_COLLECTION,
    CacheStats,
    InMemoryCacheStore,
    MongoCacheStore,
    compute_cache_key,
    compute_content_hash,
    get_cache_store,
    set_cache_store,
)
from ai_gateway.db import mongo


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 6, 1, 8, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def in_memory_store(clock):
    """Fresh in-memory cache store for testing."""
    return InMemoryCacheStore(clock=clock)


@pytest.fixture
def mongo_store(mock_db, clock):
    """MongoDB cache store with mock backend."""
    return MongoCacheStore(clock=clock)


@pytest.fixture(params=["memory", "mongo"])
def store(request, clock):
    """Run the behavioural tests against both backends."""
    if request.param == "memory":
        yield InMemoryCacheStore(clock=clock)
        return

    mongo.set_client(AsyncMongoMockClient())
    yield MongoCacheStore(clock=clock)
    mongo.set_client(None)


# =============================================================================
# Hashing
# =============================================================================

class TestHashing:
    """Tests for cache key and content hash computation."""

    def test_cache_key_shape(self):
        key = compute_cache_key("process-document", "user-1234567890", {"a": 1})
        prefix, caller, digest = key.rsplit("_", 2)
        assert prefix == "process-document"
        assert caller == "user-123"
        assert len(digest) == 24

    def test_cache_key_deterministic_regardless_of_key_order(self):
        first = compute_cache_key("fn", "caller", {"a": 1, "b": [1, 2]})
        second = compute_cache_key("fn", "caller", {"b": [1, 2], "a": 1})
        assert first == second

    def test_cache_key_varies_by_caller_and_input(self):
        base = compute_cache_key("fn", "caller-a", "input")
        assert compute_cache_key("fn", "caller-b", "input") != base
        assert compute_cache_key("fn", "caller-a", "other") != base
        assert compute_cache_key("other", "caller-a", "input") != base

    def test_cache_key_for_bytes(self):
        assert compute_cache_key("fn", "c", b"%PDF-1.4 abc") == compute_cache_key("fn", "c", b"%PDF-1.4 abc")
        assert compute_cache_key("fn", "c", b"%PDF-1.4 abc") != compute_cache_key("fn", "c", b"%PDF-1.4 abd")

    def test_content_hash(self):
        assert len(compute_content_hash({"x": 1})) == 32
        assert compute_content_hash({"x": 1, "y": 2}) == compute_content_hash({"y": 2, "x": 1})
        assert compute_content_hash("text") != compute_content_hash("other")


# =============================================================================
# Behaviour shared by both backends
# =============================================================================

class TestCacheStore:
    """Tests run against both InMemoryCacheStore and MongoCacheStore."""

    @pytest.mark.asyncio
    async def test_miss(self, store):
        assert await store.get("absent") is None

    @pytest.mark.asyncio
    async def test_set_and_get(self, store):
        payload = {"document_name": "Hemograma", "parameters": [{"name": "Hb", "value": "13.5"}]}

        assert await store.set("key-1", payload, function_name="process-document") is True

        assert await store.get("key-1") == payload

    @pytest.mark.asyncio
    async def test_expired_entry_is_a_miss(self, store, clock):
        await store.set("key-1", {"v": 1}, function_name="fn", ttl_hours=1)

        clock.advance(minutes=59)
        assert await store.get("key-1") == {"v": 1}

        clock.advance(minutes=2)
        assert await store.get("key-1") is None

    @pytest.mark.asyncio
    async def test_newest_entry_wins(self, store, clock):
        await store.set("key-1", {"v": 1}, function_name="fn")
        clock.advance(seconds=5)
        await store.set("key-1", {"v": 2}, function_name="fn")

        assert await store.get("key-1") == {"v": 2}

    @pytest.mark.asyncio
    async def test_restored_content_wins_over_newer_entry(self, store, clock):
        await store.set("key-1", {"v": "A"}, function_name="fn")
        clock.advance(seconds=5)
        await store.set("key-1", {"v": "B"}, function_name="fn")
        clock.advance(seconds=5)
        await store.set("key-1", {"v": "A"}, function_name="fn")

        assert await store.get("key-1") == {"v": "A"}
        assert (await store.get_stats()).total_entries == 2

    @pytest.mark.asyncio
    async def test_restored_content_wins_within_same_instant(self, store):
        await store.set("key-1", {"v": "A"}, function_name="fn")
        await store.set("key-1", {"v": "B"}, function_name="fn")
        await store.set("key-1", {"v": "A"}, function_name="fn")

        assert await store.get("key-1") == {"v": "A"}

    @pytest.mark.asyncio
    async def test_identical_content_refreshes_expiry(self, store, clock):
        await store.set("key-1", {"v": 1}, function_name="fn", ttl_hours=1)
        clock.advance(minutes=50)
        await store.set("key-1", {"v": 1}, function_name="fn", ttl_hours=1)

        stats = await store.get_stats()
        assert stats.total_entries == 1

        clock.advance(minutes=30)
        assert await store.get("key-1") == {"v": 1}

    @pytest.mark.asyncio
    async def test_hits_counted(self, store):
        await store.set("key-1", {"v": 1}, function_name="fn")
        await store.get("key-1")
        await store.get("key-1")
        await store.get("key-1")

        stats = await store.get_stats()

        assert stats.total_entries == 1
        assert stats.total_hits == 3
        assert stats.hit_rate == 75.0

    @pytest.mark.asyncio
    async def test_invalidate(self, store, clock):
        await store.set("key-1", {"v": 1}, function_name="fn")
        clock.advance(seconds=1)
        await store.set("key-1", {"v": 2}, function_name="fn")
        await store.set("key-2", {"v": 3}, function_name="fn")

        assert await store.invalidate("key-1") == 2

        assert await store.get("key-1") is None
        assert await store.get("key-2") == {"v": 3}

    @pytest.mark.asyncio
    async def test_invalidate_by_function(self, store):
        await store.set("a", {"v": 1}, function_name="process-document")
        await store.set("b", {"v": 2}, function_name="process-document")
        await store.set("c", {"v": 3}, function_name="summarize")

        assert await store.invalidate_by_function("process-document") == 2

        assert await store.get("a") is None
        assert await store.get("c") == {"v": 3}

    @pytest.mark.asyncio
    async def test_cleanup_removes_only_expired(self, store, clock):
        await store.set("short", {"v": 1}, function_name="fn", ttl_hours=1)
        await store.set("long", {"v": 2}, function_name="fn", ttl_hours=72)
        clock.advance(hours=2)

        assert await store.cleanup() == 1

        assert await store.get("long") == {"v": 2}
        stats = await store.get_stats()
        assert stats.total_entries == 1

    @pytest.mark.asyncio
    async def test_stats_empty(self, store):
        stats = await store.get_stats()
        assert stats == CacheStats()
        assert stats.to_dict()["oldest_entry"] is None

    @pytest.mark.asyncio
    async def test_stats_age_range(self, store, clock):
        first_at = clock()
        await store.set("a", {"v": 1}, function_name="fn")
        clock.advance(hours=1)
        await store.set("b", {"v": 2}, function_name="fn")

        stats = await store.get_stats()

        assert stats.oldest_entry == first_at
        assert stats.newest_entry == clock()


# =============================================================================
# Backend specifics
# =============================================================================

class TestInMemoryCacheStore:
    @pytest.mark.asyncio
    async def test_len_counts_expired_until_cleanup(self, in_memory_store, clock):
        await in_memory_store.set("a", {"v": 1}, function_name="fn", ttl_hours=1)
        clock.advance(hours=2)

        assert len(in_memory_store) == 1
        await in_memory_store.cleanup()
        assert len(in_memory_store) == 0

    @pytest.mark.asyncio
    async def test_returned_payload_metadata_is_a_copy(self, in_memory_store, clock):
        await in_memory_store.set("a", {"v": 1}, function_name="fn")
        entry = await in_memory_store._get("a", clock())
        entry.hit_count = 99

        stats = await in_memory_store.get_stats()
        assert stats.total_hits == 1

    @pytest.mark.asyncio
    async def test_read_failure_is_a_miss(self, in_memory_store):
        in_memory_store._get = AsyncMock(side_effect=RuntimeError("boom"))
        assert await in_memory_store.get("a") is None

    @pytest.mark.asyncio
    async def test_write_failure_returns_false(self, in_memory_store):
        in_memory_store._set = AsyncMock(side_effect=RuntimeError("boom"))
        assert await in_memory_store.set("a", {"v": 1}, function_name="fn") is False

    @pytest.mark.asyncio
    async def test_cleanup_task_lifecycle(self, in_memory_store):
        await in_memory_store.start_cleanup_task()
        task = in_memory_store._cleanup_task
        assert task is not None and not task.done()

        await in_memory_store.stop_cleanup_task()
        assert task.done()


class TestMongoCacheStore:
    @pytest.mark.asyncio
    async def test_document_shape(self, mongo_store, mock_db, clock):
        await mongo_store.set(
            "key-1",
            {"v": 1},
            function_name="summarize",
            ttl_hours=2,
            provider="groq",
            model="llama",
            tokens_used=42,
        )

        doc = await mock_db[CACHE_COLLECTION].find_one({"cache_key": "key-1"})

        assert doc["function_name"] == "summarize"
        assert doc["content_hash"] == compute_content_hash({"v": 1})
        assert doc["provider"] == "groq"
        assert doc["tokens_used"] == 42
        assert doc["hit_count"] == 0
        assert doc["expires_at"] == (clock() + timedelta(hours=2)).replace(tzinfo=None)

    @pytest.mark.asyncio
    async def test_refresh_moves_stored_at(self, mongo_store, mock_db, clock):
        await mongo_store.set("key-1", {"v": 1}, function_name="fn")
        first = await mock_db[CACHE_COLLECTION].find_one({"cache_key": "key-1"})
        clock.advance(minutes=10)

        await mongo_store.set("key-1", {"v": 1}, function_name="fn")

        doc = await mock_db[CACHE_COLLECTION].find_one({"cache_key": "key-1"})
        assert doc["created_at"] == first["created_at"]
        assert doc["stored_at"] == clock().replace(tzinfo=None)
        assert doc["revision"] != first["revision"]

    @pytest.mark.asyncio
    async def test_hit_updates_last_accessed(self, mongo_store, mock_db, clock):
        await mongo_store.set("key-1", {"v": 1}, function_name="fn")
        clock.advance(minutes=5)

        await mongo_store.get("key-1")

        doc = await mock_db[CACHE_COLLECTION].find_one({"cache_key": "key-1"})
        assert doc["hit_count"] == 1
        assert doc["last_accessed_at"] == clock().replace(tzinfo=None)

    @pytest.mark.asyncio
    async def test_database_failure_is_a_miss(self, clock):
        broken = MongoCacheStore(clock=clock)
        broken._get_collection = AsyncMock(side_effect=ConnectionError("db down"))

        assert await broken.get("key-1") is None
        assert await broken.set("key-1", {"v": 1}, function_name="fn") is False
        assert await broken.cleanup() == 0
        assert await broken.get_stats() == CacheStats()


class TestCacheStoreSelection:
    def test_memory_backend(self, monkeypatch):
        set_cache_store(None)
        monkeypatch.setenv("CACHE_STORE_BACKEND", "memory")
        try:
            assert isinstance(get_cache_store(), InMemoryCacheStore)
        finally:
            set_cache_store(None)

    def test_mongo_backend_default(self, monkeypatch):
        set_cache_store(None)
        monkeypatch.delenv("CACHE_STORE_BACKEND", raising=False)
        try:
            assert isinstance(get_cache_store(), MongoCacheStore)
        finally:
            set_cache_store(None)
