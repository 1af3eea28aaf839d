"""Rate limiter interface (domain)."""

from __future__ import annotations

from abc import ABC, abstractmethod


class RateLimiter(ABC):
    """Sliding-window attempt counter keyed by caller identifier."""

    @abstractmethod
    async def admit(self, identifier: str) -> bool:
        """Record one attempt if the window has room; False when it is full.

        The check and the record happen as one atomic step.
        """
        pass

    @abstractmethod
    async def is_allowed(self, identifier: str) -> bool:
        pass

    @abstractmethod
    async def record_attempt(self, identifier: str) -> int:
        """Record one attempt and return the number of attempts in the window."""
        pass

    @abstractmethod
    async def record_success(self, identifier: str) -> None:
        """Relieve one prior attempt after a successful payment."""
        pass

    @abstractmethod
    async def reset(self, identifier: str) -> bool:
        pass

    @abstractmethod
    async def remaining_attempts(self, identifier: str) -> int:
        pass
