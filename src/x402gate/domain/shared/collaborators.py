"""Narrow interfaces for the optional collaborators of the payment handler."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Mapping, Optional, Protocol

if TYPE_CHECKING:
    from ...application.events import PaymentEvent


@dataclass(frozen=True)
class ComplianceResult:
    blocked: bool
    reason: Optional[str] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)


class ComplianceChecker(Protocol):
    """Sanctions / blocklist screening for payer and recipient addresses."""

    async def check_address(self, address: str, network: str) -> ComplianceResult:
        ...


class MetricsSink(Protocol):
    def increment(
        self, name: str, value: int = 1, tags: Optional[Mapping[str, str]] = None
    ) -> None:
        ...

    def timing(
        self, name: str, seconds: float, tags: Optional[Mapping[str, str]] = None
    ) -> None:
        ...

    def gauge(
        self, name: str, value: float, tags: Optional[Mapping[str, str]] = None
    ) -> None:
        ...


class EventDispatcher(Protocol):
    def dispatch(self, event: "PaymentEvent") -> None:
        ...


class WebhookVerifier(Protocol):
    def verify_signature(self, payload: bytes, signature: str) -> bool:
        ...
