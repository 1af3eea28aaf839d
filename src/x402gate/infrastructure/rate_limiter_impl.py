"""Store-backed sliding-window rate limiter."""

from __future__ import annotations

import hashlib
import time
import uuid
from typing import Any, Callable

from ..domain.rate_limiter import RateLimiter
from .scripts import RATE_LIMIT_SCRIPTS
from .storage import KeyValueStore

RATE_LIMIT_KEY_PREFIX = "x402:ratelimit:"
# Keys outlive the window slightly so a late prune still finds them.
KEY_TTL_PADDING_SECONDS = 10


class SlidingWindowRateLimiter(RateLimiter):
    """Counts attempts per identifier over the last ``window_seconds``.

    Each attempt is a sorted-set member scored by its timestamp. Identifiers
    are hashed before they become part of a key.
    """

    def __init__(
        self,
        store: KeyValueStore,
        max_attempts: int = 10,
        window_seconds: int = 60,
        namespace: str = "default",
        clock: Callable[[], float] = time.time,
    ):
        if max_attempts <= 0:
            raise ValueError("max_attempts must be positive")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.store = store
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self.namespace = namespace
        self._clock = clock

    def _key(self, identifier: str) -> str:
        digest = hashlib.sha256(identifier.encode("utf-8")).hexdigest()
        return f"{RATE_LIMIT_KEY_PREFIX}{self.namespace}:{digest}"

    async def _run(self, name: str, identifier: str, *extra: str) -> list[Any]:
        args = [repr(self._clock()), str(self.window_seconds), *extra]
        return await self.store.eval(
            RATE_LIMIT_SCRIPTS[name], keys=[self._key(identifier)], args=args
        )

    def _new_member(self) -> str:
        # Members must be unique even when two attempts share a timestamp.
        return f"{self._clock():.6f}:{uuid.uuid4().hex}"

    async def _count(self, identifier: str) -> int:
        result = await self._run("count_attempts", identifier)
        return int(result[1])

    async def admit(self, identifier: str) -> bool:
        result = await self._run(
            "admit_attempt",
            identifier,
            self._new_member(),
            str(self.window_seconds + KEY_TTL_PADDING_SECONDS),
            str(self.max_attempts),
        )
        return int(result[0]) == 1

    async def is_allowed(self, identifier: str) -> bool:
        return await self._count(identifier) < self.max_attempts

    async def record_attempt(self, identifier: str) -> int:
        result = await self._run(
            "record_attempt",
            identifier,
            self._new_member(),
            str(self.window_seconds + KEY_TTL_PADDING_SECONDS),
        )
        return int(result[1])

    async def record_success(self, identifier: str) -> None:
        await self._run("release_attempt", identifier)

    async def reset(self, identifier: str) -> bool:
        return await self.store.delete(self._key(identifier)) > 0

    async def remaining_attempts(self, identifier: str) -> int:
        return max(0, self.max_attempts - await self._count(identifier))
