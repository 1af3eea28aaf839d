"""Nonce tracker interface (domain)."""

from __future__ import annotations

from abc import ABC, abstractmethod


class NonceTracker(ABC):
    """Remembers consumed authorization nonces for a bounded time."""

    @abstractmethod
    async def has_nonce(self, nonce: str) -> bool:
        pass

    @abstractmethod
    async def mark_used(self, nonce: str, ttl_seconds: int) -> bool:
        """Atomically mark ``nonce`` as used.

        Returns True when this call created the marker, False when the nonce
        had already been marked by someone else.
        """
        pass

    @abstractmethod
    async def remove(self, nonce: str) -> bool:
        """Forget a nonce. Intended for tests and manual cleanup only."""
        pass
