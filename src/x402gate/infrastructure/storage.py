"""Storage abstractions and Redis implementation for the replay and rate-limit stores."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, List

from .database import DatabaseClient


class KeyValueStore(ABC):
    """Abstract key-value store with the minimal operations the pipeline needs.

    Multi-step updates go through ``eval`` so they stay atomic on the server.
    """

    @abstractmethod
    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        """Atomically create ``key`` with an expiry unless it already exists.

        Returns True if this call created the key.
        """
        pass

    @abstractmethod
    async def exists(self, key: str) -> bool:
        pass

    @abstractmethod
    async def delete(self, key: str) -> int:
        pass

    @abstractmethod
    async def eval(self, script: str, keys: List[str], args: List[str]) -> Any:
        pass


class RedisKeyValueStore(KeyValueStore):
    """Redis-backed implementation of KeyValueStore."""

    def __init__(self, db_client: DatabaseClient):
        self._db_client = db_client

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        async with self._db_client.get_connection() as conn:
            # SET NX EX returns None when the key already exists.
            return bool(await conn.set(key, value, nx=True, ex=ttl_seconds))

    async def exists(self, key: str) -> bool:
        async with self._db_client.get_connection() as conn:
            return await conn.exists(key) > 0

    async def delete(self, key: str) -> int:
        async with self._db_client.get_connection() as conn:
            return await conn.delete(key)

    async def eval(self, script: str, keys: List[str], args: List[str]) -> Any:
        async with self._db_client.get_connection() as conn:
            return await conn.eval(script, len(keys), *keys, *args)
