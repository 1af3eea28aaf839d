"""Redis connection holder."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional, Protocol

import redis.asyncio as redis


class HasRedisSettings(Protocol):
    redis_url: str


class DatabaseClient:
    """Lazily created, pooled async Redis client."""

    def __init__(self, settings: HasRedisSettings):
        self.settings = settings
        self._redis: Optional[redis.Redis] = None

    def initialize_database(self) -> None:
        # Expecting URL like: redis://host:port/0
        self._redis = redis.from_url(self.settings.redis_url, decode_responses=True)

    @asynccontextmanager
    async def get_connection(self) -> AsyncGenerator[redis.Redis, None]:
        """Yield the shared Redis client. The pool stays open between uses."""
        if self._redis is None:
            self.initialize_database()
        assert self._redis is not None
        yield self._redis

    async def ping(self) -> bool:
        async with self.get_connection() as conn:
            return bool(await conn.ping())

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
