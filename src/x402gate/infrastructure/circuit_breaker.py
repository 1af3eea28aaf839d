"""Circuit breaker guarding calls to the remote facilitator.

State is local to the process; every worker keeps its own breaker.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from ..domain.errors import ErrorCode, FacilitatorUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(FacilitatorUnavailable):
    """Raised without calling upstream while the circuit is open."""

    default_code = ErrorCode.CIRCUIT_OPEN

    def __init__(self, message: str, retry_after: float = 0.0) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class CircuitBreaker:
    """CLOSED / OPEN / HALF_OPEN breaker for async callables.

    - CLOSED: calls go through; ``failure_threshold`` consecutive failures open
      the circuit. A success resets the failure count.
    - OPEN: calls fail fast with ``CircuitOpenError`` until
      ``recovery_timeout`` seconds have passed.
    - HALF_OPEN: a single trial call runs at a time. ``success_threshold``
      successful trial calls close the circuit; any failure reopens it with a
      fresh timeout.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        success_threshold: int = 2,
        clock: Callable[[], float] = time.monotonic,
        name: str = "facilitator",
    ) -> None:
        if failure_threshold <= 0:
            raise ValueError("failure_threshold must be positive")
        if recovery_timeout <= 0:
            raise ValueError("recovery_timeout must be positive")
        if success_threshold <= 0:
            raise ValueError("success_threshold must be positive")
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.success_threshold = success_threshold
        self.name = name
        self._clock = clock
        self._lock = asyncio.Lock()
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        if self._state is CircuitState.OPEN and self._recovery_elapsed():
            return CircuitState.HALF_OPEN
        return self._state

    def _recovery_elapsed(self) -> bool:
        assert self._opened_at is not None
        return self._clock() - self._opened_at >= self.recovery_timeout

    def _retry_after(self) -> float:
        if self._opened_at is None:
            return 0.0
        return max(0.0, self._opened_at + self.recovery_timeout - self._clock())

    async def _acquire(self) -> bool:
        """Decide whether a call may proceed. Returns True when it is the trial call."""
        async with self._lock:
            if self._state is CircuitState.OPEN:
                if not self._recovery_elapsed():
                    raise CircuitOpenError(
                        "Facilitator temporarily unavailable",
                        retry_after=self._retry_after(),
                    )
                self._state = CircuitState.HALF_OPEN
                self._success_count = 0
                logger.info("Circuit %s half-open", self.name)
            if self._state is CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    raise CircuitOpenError("Facilitator temporarily unavailable")
                self._trial_in_flight = True
                return True
            return False

    async def call(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        trial = await self._acquire()
        try:
            result = await fn(*args, **kwargs)
        except Exception:
            self._record_failure(trial)
            raise
        else:
            self._record_success(trial)
            return result
        finally:
            if trial:
                self._trial_in_flight = False

    def _record_success(self, trial: bool) -> None:
        if trial:
            self._success_count += 1
            if self._success_count >= self.success_threshold:
                logger.info("Circuit %s closed", self.name)
                self.reset()
        else:
            self._failure_count = 0

    def _record_failure(self, trial: bool) -> None:
        self._success_count = 0
        if trial:
            self._open()
            return
        self._failure_count += 1
        if self._failure_count >= self.failure_threshold:
            self._open()

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        logger.warning(
            "Circuit %s opened",
            self.name,
            extra={"failure_count": self._failure_count},
        )

    def reset(self) -> None:
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._opened_at = None

    def snapshot(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self._failure_count,
            "success_count": self._success_count,
            "retry_after": self._retry_after() if self.state is CircuitState.OPEN else 0.0,
        }
