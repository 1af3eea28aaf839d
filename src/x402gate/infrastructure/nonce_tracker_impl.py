"""Store-backed nonce tracker."""

from __future__ import annotations

import time
from typing import Callable

from ..application.shared.validators import is_valid_nonce
from ..domain.errors import ErrorCode, ValidationError
from ..domain.nonce_tracker import NonceTracker
from .storage import KeyValueStore

NONCE_KEY_PREFIX = "x402:nonce:"


class StoreNonceTracker(NonceTracker):
    """Records consumed nonces with a single create-if-absent-with-expiry.

    The marker's value is the first-seen unix timestamp. Markers are never
    overwritten; they disappear when their TTL runs out.
    """

    def __init__(
        self,
        store: KeyValueStore,
        namespace: str = "default",
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.namespace = namespace
        self._clock = clock

    def _key(self, nonce: str) -> str:
        return f"{NONCE_KEY_PREFIX}{self.namespace}:{nonce}"

    @staticmethod
    def _require_valid(nonce: str) -> None:
        if not is_valid_nonce(nonce):
            raise ValidationError("Invalid nonce format", ErrorCode.INVALID_NONCE)

    async def has_nonce(self, nonce: str) -> bool:
        self._require_valid(nonce)
        return await self.store.exists(self._key(nonce))

    async def mark_used(self, nonce: str, ttl_seconds: int) -> bool:
        self._require_valid(nonce)
        if ttl_seconds <= 0:
            raise ValidationError("TTL must be positive", ErrorCode.INVALID_TIMEOUT)
        return await self.store.set_if_absent(
            self._key(nonce), str(int(self._clock())), ttl_seconds
        )

    async def remove(self, nonce: str) -> bool:
        self._require_valid(nonce)
        return await self.store.delete(self._key(nonce)) > 0
