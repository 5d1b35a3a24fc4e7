"""Per-operation circuit breaker with persisted state.

State lives in a store shared by every invocation (MongoDB in production,
in-memory for tests or single-process use), so stateless workers observe
the same circuit. Transitions:

- closed -> open: failures in the trailing window reach the threshold
- open -> half_open: lazily, on the first admission check after cooldown
- half_open -> closed: on the next recorded success
- half_open -> open: when the next admission check still sees the threshold

check_state() returns an AdmissionToken that the caller threads through to
record_success() / record_failure(), so the guarded operation never
re-reads circuit state mid-flight. If the store is unreachable the breaker
fails open and admits the call.

Concurrent invocations may race on the failure counter; the bookkeeping is
eventually consistent by contract.
"""

from __future__ import annotations

import asyncio
import logging
import math
import os
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from ai_gateway.db.mongo import from_mongo_datetime, to_mongo_datetime

logger = logging.getLogger(__name__)

# Collection names for MongoDB storage
STATE_COLLECTION = "ai_circuit_breaker_state"
EVENTS_COLLECTION = "ai_circuit_breaker_events"
CONFIG_COLLECTION = "ai_circuit_breaker_config"

# Attempt events older than this are removed by the TTL index
EVENT_RETENTION_HOURS = 24


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CircuitState(str, Enum):
    """Circuit breaker states."""

    closed = "closed"
    half_open = "half_open"
    open = "open"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Thresholds for one breaker."""

    failure_threshold: int = 5
    failure_window_minutes: int = 5
    cooldown_seconds: int = 60

    @classmethod
    def from_document(cls, doc: dict[str, Any], default: CircuitBreakerConfig) -> CircuitBreakerConfig:
        return cls(
            failure_threshold=int(doc.get("failure_threshold", default.failure_threshold)),
            failure_window_minutes=int(doc.get("failure_window_minutes", default.failure_window_minutes)),
            cooldown_seconds=int(doc.get("cooldown_seconds", default.cooldown_seconds)),
        )


@dataclass
class CircuitRecord:
    """Persisted state for one operation. Absent record means closed."""

    operation: str
    state: CircuitState = CircuitState.closed
    failure_count: int = 0
    opened_at: datetime | None = None
    # Failures before this instant no longer count towards the window
    reset_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class AdmissionToken:
    """Result of an admission check, passed back when recording the outcome."""

    operation: str
    allowed: bool
    state: CircuitState
    checked_at: datetime
    reason: str | None = None
    wait_seconds: int = 0
    store_available: bool = True


@dataclass(frozen=True)
class FailureRate:
    failed: int
    total: int

    @property
    def percent(self) -> float:
        return round(self.failed / self.total * 100, 1) if self.total else 0.0


class BaseCircuitStore(ABC):
    """Abstract persistence for circuit state and attempt events."""

    @abstractmethod
    async def get_state(self, operation: str) -> Optional[CircuitRecord]:
        """Get the persisted record for an operation."""
        pass

    @abstractmethod
    async def save_state(self, record: CircuitRecord) -> None:
        """Upsert the record for an operation."""
        pass

    @abstractmethod
    async def increment_failures(self, operation: str, at: datetime) -> None:
        """Atomically increment failure_count, creating a closed record if absent."""
        pass

    @abstractmethod
    async def record_attempt(self, operation: str, success: bool, at: datetime) -> None:
        """Append an attempt event used by the trailing-window query."""
        pass

    @abstractmethod
    async def failure_rate(self, operation: str, since: datetime) -> FailureRate:
        """Failed and total attempts recorded at or after ``since``."""
        pass

    async def load_config(self) -> Optional[dict[str, Any]]:
        """Persisted threshold overrides, if any."""
        return None


class InMemoryCircuitStore(BaseCircuitStore):
    """In-process circuit store guarded by an asyncio lock."""

    def __init__(self, config: dict[str, Any] | None = None):
        self._records: dict[str, CircuitRecord] = {}
        self._events: list[tuple[str, bool, datetime]] = []
        self._config = config
        self._lock = asyncio.Lock()

    async def get_state(self, operation: str) -> Optional[CircuitRecord]:
        async with self._lock:
            record = self._records.get(operation)
            return replace(record) if record else None

    async def save_state(self, record: CircuitRecord) -> None:
        async with self._lock:
            self._records[record.operation] = replace(record)

    async def increment_failures(self, operation: str, at: datetime) -> None:
        async with self._lock:
            record = self._records.setdefault(operation, CircuitRecord(operation=operation))
            record.failure_count += 1
            record.updated_at = at

    async def record_attempt(self, operation: str, success: bool, at: datetime) -> None:
        cutoff = at - timedelta(hours=EVENT_RETENTION_HOURS)
        async with self._lock:
            self._events = [event for event in self._events if event[2] >= cutoff]
            self._events.append((operation, success, at))

    async def failure_rate(self, operation: str, since: datetime) -> FailureRate:
        async with self._lock:
            window = [ok for op, ok, at in self._events if op == operation and at >= since]
        return FailureRate(failed=sum(1 for ok in window if not ok), total=len(window))

    async def load_config(self) -> Optional[dict[str, Any]]:
        return self._config


class MongoCircuitStore(BaseCircuitStore):
    """MongoDB-backed circuit store.

    State documents are keyed by operation; attempt events carry a TTL index
    so the trailing-window query stays small.
    """

    def __init__(self):
        self._index_created = False

    async def _get_collection(self, name: str):
        from ai_gateway.db.mongo import get_database
        db = await get_database()
        return db[name]

    async def _ensure_indexes(self) -> None:
        if self._index_created:
            return

        try:
            state = await self._get_collection(STATE_COLLECTION)
            await state.create_index("operation", unique=True)
            events = await self._get_collection(EVENTS_COLLECTION)
            await events.create_index([("operation", 1), ("created_at", -1)])
            await events.create_index("expires_at", expireAfterSeconds=0, background=True)
            self._index_created = True
            logger.info("MongoDB circuit breaker indexes created")
        except Exception as e:
            logger.warning(f"Failed to create MongoDB circuit breaker indexes: {e}")

    async def get_state(self, operation: str) -> Optional[CircuitRecord]:
        collection = await self._get_collection(STATE_COLLECTION)
        doc = await collection.find_one({"operation": operation})
        if not doc:
            return None
        return CircuitRecord(
            operation=doc["operation"],
            state=CircuitState(doc.get("state", CircuitState.closed.value)),
            failure_count=doc.get("failure_count", 0),
            opened_at=from_mongo_datetime(doc.get("opened_at")),
            reset_at=from_mongo_datetime(doc.get("reset_at")),
            updated_at=from_mongo_datetime(doc.get("updated_at")),
        )

    async def save_state(self, record: CircuitRecord) -> None:
        await self._ensure_indexes()
        collection = await self._get_collection(STATE_COLLECTION)
        await collection.update_one(
            {"operation": record.operation},
            {
                "$set": {
                    "state": record.state.value,
                    "failure_count": record.failure_count,
                    "opened_at": to_mongo_datetime(record.opened_at),
                    "reset_at": to_mongo_datetime(record.reset_at),
                    "updated_at": to_mongo_datetime(record.updated_at),
                }
            },
            upsert=True,
        )

    async def increment_failures(self, operation: str, at: datetime) -> None:
        await self._ensure_indexes()
        collection = await self._get_collection(STATE_COLLECTION)
        await collection.update_one(
            {"operation": operation},
            {
                "$inc": {"failure_count": 1},
                "$set": {"updated_at": to_mongo_datetime(at)},
                "$setOnInsert": {"state": CircuitState.closed.value},
            },
            upsert=True,
        )

    async def record_attempt(self, operation: str, success: bool, at: datetime) -> None:
        await self._ensure_indexes()
        collection = await self._get_collection(EVENTS_COLLECTION)
        await collection.insert_one(
            {
                "operation": operation,
                "success": success,
                "created_at": to_mongo_datetime(at),
                "expires_at": to_mongo_datetime(at + timedelta(hours=EVENT_RETENTION_HOURS)),
            }
        )

    async def failure_rate(self, operation: str, since: datetime) -> FailureRate:
        collection = await self._get_collection(EVENTS_COLLECTION)
        query = {"operation": operation, "created_at": {"$gte": to_mongo_datetime(since)}}
        total = await collection.count_documents(query)
        failed = await collection.count_documents({**query, "success": False})
        return FailureRate(failed=failed, total=total)

    async def load_config(self) -> Optional[dict[str, Any]]:
        collection = await self._get_collection(CONFIG_COLLECTION)
        return await collection.find_one({})


class CircuitBreaker:
    """Admission control for one named operation."""

    def __init__(
        self,
        operation: str,
        store: BaseCircuitStore,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.operation = operation
        self._store = store
        self._config = config or CircuitBreakerConfig()
        self._clock = clock
        self._initialized = False

    @property
    def config(self) -> CircuitBreakerConfig:
        return self._config

    async def initialize(self) -> None:
        """Load persisted threshold overrides once. Defaults stay on any failure."""
        if self._initialized:
            return
        self._initialized = True
        try:
            doc = await self._store.load_config()
        except Exception as e:
            logger.warning(f"Could not load circuit breaker config, using defaults: {e}")
            return
        if doc:
            self._config = CircuitBreakerConfig.from_document(doc, self._config)
            logger.debug(
                "Circuit breaker config loaded for %s: %s",
                self.operation,
                self._config,
            )

    async def check_state(self) -> AdmissionToken:
        """Decide whether the guarded operation may run now."""
        await self.initialize()
        now = self._clock()

        try:
            record = await self._store.get_state(self.operation) or CircuitRecord(operation=self.operation)

            if record.state is CircuitState.open:
                opened_at = record.opened_at or now
                elapsed = (now - opened_at).total_seconds()
                if elapsed >= self._config.cooldown_seconds:
                    record.state = CircuitState.half_open
                    record.updated_at = now
                    await self._store.save_state(record)
                    logger.info(
                        "Circuit breaker HALF-OPEN for %s",
                        self.operation,
                        extra={"operation": self.operation},
                    )
                    return AdmissionToken(self.operation, True, CircuitState.half_open, now)

                wait = math.ceil(self._config.cooldown_seconds - elapsed)
                return AdmissionToken(
                    self.operation,
                    False,
                    CircuitState.open,
                    now,
                    reason=f"Circuit breaker open for {self.operation}. Wait {wait}s",
                    wait_seconds=wait,
                )

            window_start = now - timedelta(minutes=self._config.failure_window_minutes)
            if record.reset_at and record.reset_at > window_start:
                window_start = record.reset_at
            rate = await self._store.failure_rate(self.operation, window_start)

            if rate.failed >= self._config.failure_threshold:
                record.state = CircuitState.open
                record.opened_at = now
                record.failure_count = rate.failed
                record.updated_at = now
                await self._store.save_state(record)
                logger.error(
                    "Circuit breaker OPEN for %s: %d/%d failures (%.1f%%)",
                    self.operation,
                    rate.failed,
                    rate.total,
                    rate.percent,
                    extra={"operation": self.operation},
                )
                return AdmissionToken(
                    self.operation,
                    False,
                    CircuitState.open,
                    now,
                    reason=f"Failure rate too high ({rate.percent}%). Circuit breaker open for {self.operation}",
                    wait_seconds=self._config.cooldown_seconds,
                )

            return AdmissionToken(self.operation, True, record.state, now)

        except Exception as e:
            logger.error(
                f"Circuit breaker store unavailable for {self.operation}, admitting call: {e}",
                extra={"operation": self.operation},
            )
            return AdmissionToken(self.operation, True, CircuitState.closed, now, store_available=False)

    async def record_success(self, token: AdmissionToken) -> None:
        """Record a settled success. Closes a half-open circuit."""
        now = self._clock()
        try:
            await self._store.record_attempt(self.operation, True, now)
            if token.state is CircuitState.half_open:
                await self._store.save_state(
                    CircuitRecord(
                        operation=self.operation,
                        state=CircuitState.closed,
                        failure_count=0,
                        opened_at=None,
                        reset_at=now,
                        updated_at=now,
                    )
                )
                logger.info(
                    "Circuit breaker CLOSED for %s",
                    self.operation,
                    extra={"operation": self.operation},
                )
        except Exception as e:
            logger.warning(f"Failed to record circuit success for {self.operation}: {e}")

    async def record_failure(self, token: AdmissionToken) -> None:
        """Record a settled failure."""
        now = self._clock()
        try:
            await self._store.record_attempt(self.operation, False, now)
            await self._store.increment_failures(self.operation, now)
            logger.debug(
                "Circuit failure recorded for %s (admitted in state %s)",
                self.operation,
                token.state.value,
            )
        except Exception as e:
            logger.warning(f"Failed to record circuit failure for {self.operation}: {e}")

    async def get_status(self) -> dict[str, Any]:
        """Read-only snapshot for operators."""
        record = await self._store.get_state(self.operation) or CircuitRecord(operation=self.operation)
        window_start = self._clock() - timedelta(minutes=self._config.failure_window_minutes)
        rate = await self._store.failure_rate(self.operation, window_start)
        return {
            "operation": self.operation,
            "state": record.state.value,
            "failure_count": record.failure_count,
            "opened_at": record.opened_at.isoformat() if record.opened_at else None,
            "window_failures": rate.failed,
            "window_total": rate.total,
            "failure_threshold": self._config.failure_threshold,
            "failure_window_minutes": self._config.failure_window_minutes,
            "cooldown_seconds": self._config.cooldown_seconds,
        }


# Module-level singleton instance
_circuit_store: Optional[BaseCircuitStore] = None


def get_circuit_store() -> BaseCircuitStore:
    """Get the default circuit store singleton.

    Uses MongoDB unless CIRCUIT_STORE_BACKEND=memory.
    """
    global _circuit_store
    if _circuit_store is None:
        use_mongo = os.getenv("CIRCUIT_STORE_BACKEND", "mongo").lower() == "mongo"
        if use_mongo:
            _circuit_store = MongoCircuitStore()
            logger.info("Using MongoDB circuit breaker store")
        else:
            _circuit_store = InMemoryCircuitStore()
            logger.info("Using in-memory circuit breaker store")
    return _circuit_store


def set_circuit_store(store: Optional[BaseCircuitStore]) -> None:
    """Set the circuit store instance (for testing)."""
    global _circuit_store
    _circuit_store = store
