"""Unit tests for the circuit breaker and its stores.

Tests cover:
- closed -> open after threshold failures in the window
- open -> half_open after cooldown, half_open -> closed on success
- failures outside the window or before a reset are ignored
- persisted config overrides
- fail-open when the store is unreachable
- MongoCircuitStore with a mock backend
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from ai_gateway.db import mongo
from ai_gateway.llm.circuit_breaker import (
    CONFIG_COLLECTION,
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitRecord,
    CircuitState,
    InMemoryCircuitStore,
    MongoCircuitStore,
    get_circuit_store,
    set_circuit_store,
)


class FakeClock:
    """Controllable clock for breaker tests."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

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
def store():
    return InMemoryCircuitStore()


@pytest.fixture
def breaker(store, clock):
    return CircuitBreaker(
        "process-document",
        store,
        CircuitBreakerConfig(failure_threshold=3, failure_window_minutes=5, cooldown_seconds=60),
        clock=clock,
    )


async def fail_times(breaker: CircuitBreaker, count: int) -> None:
    for _ in range(count):
        token = await breaker.check_state()
        assert token.allowed
        await breaker.record_failure(token)


# =============================================================================
# State transitions
# =============================================================================

class TestCircuitTransitions:
    """Tests for closed/open/half_open transitions."""

    @pytest.mark.asyncio
    async def test_starts_closed(self, breaker):
        token = await breaker.check_state()
        assert token.allowed
        assert token.state is CircuitState.closed

    @pytest.mark.asyncio
    async def test_opens_at_threshold(self, breaker, store):
        await fail_times(breaker, 3)

        token = await breaker.check_state()

        assert not token.allowed
        assert token.state is CircuitState.open
        assert token.wait_seconds == 60
        record = await store.get_state("process-document")
        assert record.state is CircuitState.open
        assert record.failure_count == 3

    @pytest.mark.asyncio
    async def test_below_threshold_stays_closed(self, breaker):
        await fail_times(breaker, 2)
        token = await breaker.check_state()
        assert token.allowed

    @pytest.mark.asyncio
    async def test_open_reports_remaining_wait(self, breaker, clock):
        await fail_times(breaker, 3)
        await breaker.check_state()

        clock.advance(seconds=20)
        token = await breaker.check_state()

        assert not token.allowed
        assert token.wait_seconds == 40
        assert "40s" in token.reason

    @pytest.mark.asyncio
    async def test_half_open_after_cooldown(self, breaker, clock, store):
        await fail_times(breaker, 3)
        await breaker.check_state()

        clock.advance(seconds=60)
        token = await breaker.check_state()

        assert token.allowed
        assert token.state is CircuitState.half_open
        assert (await store.get_state("process-document")).state is CircuitState.half_open

    @pytest.mark.asyncio
    async def test_success_in_half_open_closes(self, breaker, clock, store):
        await fail_times(breaker, 3)
        await breaker.check_state()
        clock.advance(seconds=61)

        token = await breaker.check_state()
        await breaker.record_success(token)

        record = await store.get_state("process-document")
        assert record.state is CircuitState.closed
        assert record.failure_count == 0
        # Failures from before the reset no longer count
        clock.advance(seconds=1)
        assert (await breaker.check_state()).allowed

    @pytest.mark.asyncio
    async def test_half_open_reopens_when_failures_persist(self, breaker, clock):
        await fail_times(breaker, 3)
        await breaker.check_state()
        clock.advance(seconds=60)

        token = await breaker.check_state()
        assert token.state is CircuitState.half_open
        await breaker.record_failure(token)

        # Threshold is still met inside the trailing window
        token = await breaker.check_state()
        assert not token.allowed
        assert token.state is CircuitState.open

    @pytest.mark.asyncio
    async def test_old_failures_leave_window(self, breaker, clock):
        await fail_times(breaker, 2)
        clock.advance(minutes=6)
        await fail_times(breaker, 2)

        token = await breaker.check_state()

        assert token.allowed

    @pytest.mark.asyncio
    async def test_successes_do_not_count_as_failures(self, breaker):
        for _ in range(5):
            token = await breaker.check_state()
            await breaker.record_success(token)
        await fail_times(breaker, 2)

        assert (await breaker.check_state()).allowed

    @pytest.mark.asyncio
    async def test_operations_are_independent(self, store, clock):
        config = CircuitBreakerConfig(failure_threshold=1)
        first = CircuitBreaker("summarize", store, config, clock=clock)
        second = CircuitBreaker("translate", store, config, clock=clock)

        token = await first.check_state()
        await first.record_failure(token)

        assert not (await first.check_state()).allowed
        assert (await second.check_state()).allowed


class TestCircuitConfig:
    @pytest.mark.asyncio
    async def test_persisted_config_overrides_defaults(self, clock):
        store = InMemoryCircuitStore(config={"failure_threshold": 1, "cooldown_seconds": 10})
        breaker = CircuitBreaker("summarize", store, clock=clock)

        await breaker.initialize()

        assert breaker.config.failure_threshold == 1
        assert breaker.config.cooldown_seconds == 10
        assert breaker.config.failure_window_minutes == 5

    @pytest.mark.asyncio
    async def test_config_load_failure_keeps_defaults(self, clock):
        store = InMemoryCircuitStore()
        store.load_config = AsyncMock(side_effect=RuntimeError("db down"))
        breaker = CircuitBreaker("summarize", store, clock=clock)

        token = await breaker.check_state()

        assert token.allowed
        assert breaker.config == CircuitBreakerConfig()


class TestFailOpen:
    """The breaker admits calls when its store is unreachable."""

    @pytest.mark.asyncio
    async def test_store_failure_admits(self, store, clock):
        store.get_state = AsyncMock(side_effect=ConnectionError("db down"))
        breaker = CircuitBreaker("summarize", store, clock=clock)

        token = await breaker.check_state()

        assert token.allowed
        assert token.store_available is False

    @pytest.mark.asyncio
    async def test_record_failure_swallows_store_errors(self, store, clock):
        breaker = CircuitBreaker("summarize", store, clock=clock)
        token = await breaker.check_state()
        store.record_attempt = AsyncMock(side_effect=ConnectionError("db down"))

        await breaker.record_failure(token)
        await breaker.record_success(token)


class TestStatus:
    @pytest.mark.asyncio
    async def test_get_status(self, breaker):
        await fail_times(breaker, 2)

        status = await breaker.get_status()

        assert status["operation"] == "process-document"
        assert status["state"] == "closed"
        assert status["window_failures"] == 2
        assert status["window_total"] == 2
        assert status["failure_threshold"] == 3


# =============================================================================
# MongoDB store
# =============================================================================

class TestMongoCircuitStore:
    """Tests for MongoCircuitStore with a mock backend."""

    @pytest.mark.asyncio
    async def test_state_round_trip(self, mock_db, clock):
        store = MongoCircuitStore()
        record = CircuitRecord(
            operation="summarize",
            state=CircuitState.open,
            failure_count=4,
            opened_at=clock(),
            updated_at=clock(),
        )

        await store.save_state(record)
        loaded = await store.get_state("summarize")

        assert loaded.state is CircuitState.open
        assert loaded.failure_count == 4
        assert loaded.opened_at == clock()
        assert loaded.opened_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_increment_creates_closed_record(self, mock_db, clock):
        store = MongoCircuitStore()

        await store.increment_failures("summarize", clock())
        await store.increment_failures("summarize", clock())

        record = await store.get_state("summarize")
        assert record.state is CircuitState.closed
        assert record.failure_count == 2

    @pytest.mark.asyncio
    async def test_failure_rate_window(self, mock_db, clock):
        store = MongoCircuitStore()
        await store.record_attempt("summarize", False, clock() - timedelta(minutes=10))
        await store.record_attempt("summarize", False, clock())
        await store.record_attempt("summarize", True, clock())
        await store.record_attempt("translate", False, clock())

        rate = await store.failure_rate("summarize", clock() - timedelta(minutes=5))

        assert rate.failed == 1
        assert rate.total == 2
        assert rate.percent == 50.0

    @pytest.mark.asyncio
    async def test_breaker_opens_over_mongo(self, mock_db, clock):
        breaker = CircuitBreaker("summarize", MongoCircuitStore(), CircuitBreakerConfig(failure_threshold=2), clock=clock)
        await fail_times(breaker, 2)

        token = await breaker.check_state()

        assert not token.allowed
        doc = await mock_db["ai_circuit_breaker_state"].find_one({"operation": "summarize"})
        assert doc["state"] == "open"

    @pytest.mark.asyncio
    async def test_config_document(self, mock_db, clock):
        await mock_db[CONFIG_COLLECTION].insert_one({"failure_threshold": 7, "cooldown_seconds": 5})
        breaker = CircuitBreaker("summarize", MongoCircuitStore(), clock=clock)

        await breaker.initialize()

        assert breaker.config.failure_threshold == 7
        assert breaker.config.cooldown_seconds == 5


class TestCircuitStoreSelection:
    def test_memory_backend(self, monkeypatch):
        set_circuit_store(None)
        monkeypatch.setenv("CIRCUIT_STORE_BACKEND", "memory")
        try:
            assert isinstance(get_circuit_store(), InMemoryCircuitStore)
        finally:
            set_circuit_store(None)

    def test_mongo_backend_default(self, monkeypatch):
        set_circuit_store(None)
        monkeypatch.delenv("CIRCUIT_STORE_BACKEND", raising=False)
        try:
            assert isinstance(get_circuit_store(), MongoCircuitStore)
        finally:
            set_circuit_store(None)
