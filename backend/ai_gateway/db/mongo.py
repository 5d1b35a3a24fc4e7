"""MongoDB connection setup using Motor async driver."""

import os
from datetime import datetime, timezone

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

# Configuration from environment variables with defaults
MONGODB_URL = os.getenv("MONGODB_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "ai_gateway")

# Global client instance
_client: AsyncIOMotorClient | None = None


async def get_database() -> AsyncIOMotorDatabase:
    """Get the database instance, creating the client on first use.

    The cache and circuit breaker stores share this client so every
    invocation in the process observes the same persisted records.
    """
    global _client
    if _client is None:
        # Fail fast so fail-open callers are not stuck behind a dead server
        _client = AsyncIOMotorClient(
            MONGODB_URL,
            serverSelectionTimeoutMS=5000,
            connectTimeoutMS=5000,
        )
    return _client[DATABASE_NAME]


async def close_database() -> None:
    """Close the database connection."""
    global _client
    if _client is not None:
        _client.close()
        _client = None


def get_client() -> AsyncIOMotorClient | None:
    """Get the current client instance (for testing)."""
    return _client


def set_client(client: AsyncIOMotorClient | None) -> None:
    """Set the client instance (for testing)."""
    global _client
    _client = client


def to_mongo_datetime(dt: datetime | None) -> datetime | None:
    """Convert to the naive UTC datetime MongoDB stores."""
    if dt is None:
        return None
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def from_mongo_datetime(dt: datetime | None) -> datetime | None:
    """Attach UTC to a datetime read back from MongoDB."""
    if dt is None:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
