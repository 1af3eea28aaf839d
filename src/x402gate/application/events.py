"""Payment lifecycle events and a minimal in-process dispatcher."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, ClassVar, Optional

from ..domain.entities import PaymentPayload, PaymentRequirements, SettleResult


@dataclass(frozen=True)
class PaymentEvent:
    event_name: ClassVar[str] = "payment"

    requirements: PaymentRequirements
    payload: Optional[PaymentPayload] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": self.event_name,
            "payload": self.payload.to_dict() if self.payload else None,
            "requirements": self.requirements.to_dict(),
            "timestamp": self.timestamp.isoformat(),
            "metadata": self.metadata,
        }


@dataclass(frozen=True)
class PaymentVerified(PaymentEvent):
    event_name: ClassVar[str] = "payment.verified"


@dataclass(frozen=True)
class PaymentSettled(PaymentEvent):
    event_name: ClassVar[str] = "payment.settled"

    settlement: Optional[SettleResult] = None

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["settlement"] = self.settlement.to_dict() if self.settlement else None
        return data


@dataclass(frozen=True)
class PaymentFailed(PaymentEvent):
    event_name: ClassVar[str] = "payment.failed"

    reason: str = ""
    error_code: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["reason"] = self.reason
        data["errorCode"] = self.error_code
        return data


EventListener = Callable[[PaymentEvent], None]


class SimpleEventDispatcher:
    """Synchronous dispatcher calling listeners registered per event name."""

    def __init__(self) -> None:
        self._listeners: dict[str, list[EventListener]] = {}

    def listen(self, event_name: str, listener: EventListener) -> None:
        self._listeners.setdefault(event_name, []).append(listener)

    def dispatch(self, event: PaymentEvent) -> None:
        for listener in list(self._listeners.get(event.event_name, ())):
            listener(event)

    def clear_listeners(self, event_name: Optional[str] = None) -> None:
        """Drop the listeners of one event, or of every event when no name is given."""
        if event_name is None:
            self._listeners.clear()
        else:
            self._listeners.pop(event_name, None)
