"""Shared pytest fixtures."""

from __future__ import annotations

import os
from typing import AsyncGenerator

import pytest
import pytest_asyncio

from x402gate.infrastructure.database import DatabaseClient
from x402gate.infrastructure.storage import RedisKeyValueStore
from tests.fixtures import FakeClock, FakeFacilitator, InMemoryKeyValueStore


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> InMemoryKeyValueStore:
    """In-memory key-value store whose expiry follows ``clock``."""
    return InMemoryKeyValueStore(clock=clock)


@pytest.fixture
def facilitator() -> FakeFacilitator:
    return FakeFacilitator()


class TestRedisSettings:
    """Test settings for Redis connection."""

    __test__ = False

    def __init__(self, redis_url: str) -> None:
        self.redis_url = redis_url


@pytest_asyncio.fixture
async def redis_db_client() -> AsyncGenerator[DatabaseClient, None]:
    """Create a Redis database client for testing.

    Uses database 15 by default, or TEST_REDIS_URL if set. Skips when Redis
    is not reachable.
    """
    import redis.exceptions

    test_redis_url = os.getenv("TEST_REDIS_URL", "redis://localhost:6379/15")
    client = DatabaseClient(TestRedisSettings(redis_url=test_redis_url))
    client.initialize_database()

    try:
        await client.ping()
    except (redis.exceptions.ConnectionError, OSError) as e:
        await client.close()
        pytest.skip(f"Redis not available at {test_redis_url}: {e}")

    yield client

    async with client.get_connection() as conn:
        await conn.flushdb()
    await client.close()


@pytest_asyncio.fixture
async def redis_store(redis_db_client: DatabaseClient) -> RedisKeyValueStore:
    """Create a Redis-backed key-value store for testing."""
    return RedisKeyValueStore(redis_db_client)
