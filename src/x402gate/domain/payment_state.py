"""Payment lifecycle: states, allowed transitions and the payment record."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_serializer

from .entities import PaymentPayload, PaymentRequirements


class InvalidStateTransition(ValueError):
    """Raised when a record is asked to move along an edge that does not exist."""


class PaymentState(str, Enum):
    PENDING = "pending"
    VERIFYING = "verifying"
    VERIFIED = "verified"
    SETTLING = "settling"
    SETTLED = "settled"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    def valid_transitions(self) -> frozenset["PaymentState"]:
        return _TRANSITIONS[self]

    def can_transition_to(self, target: "PaymentState") -> bool:
        return target in _TRANSITIONS[self]

    def is_final(self) -> bool:
        return not _TRANSITIONS[self]

    def is_successful(self) -> bool:
        return self in (PaymentState.VERIFIED, PaymentState.SETTLED)


_TRANSITIONS: dict[PaymentState, frozenset[PaymentState]] = {
    PaymentState.PENDING: frozenset(
        {PaymentState.VERIFYING, PaymentState.EXPIRED, PaymentState.CANCELLED}
    ),
    PaymentState.VERIFYING: frozenset(
        {PaymentState.VERIFIED, PaymentState.FAILED, PaymentState.EXPIRED}
    ),
    PaymentState.VERIFIED: frozenset({PaymentState.SETTLING, PaymentState.EXPIRED}),
    PaymentState.SETTLING: frozenset({PaymentState.SETTLED, PaymentState.FAILED}),
    PaymentState.SETTLED: frozenset(),
    PaymentState.FAILED: frozenset(),
    PaymentState.EXPIRED: frozenset(),
    PaymentState.CANCELLED: frozenset(),
}


class PaymentRecord(BaseModel):
    """One payment's lifecycle. Immutable; ``transition_to`` returns a new record."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    requirements: PaymentRequirements
    payload: Optional[PaymentPayload] = None
    state: PaymentState = PaymentState.PENDING
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: Optional[datetime] = None
    transaction_hash: Optional[str] = None
    error_message: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_serializer("created_at")
    def serialize_created_at(self, value: datetime) -> str:
        return value.isoformat()

    @field_serializer("updated_at")
    def serialize_updated_at(self, value: Optional[datetime]) -> Optional[str]:
        return value.isoformat() if value else None

    @classmethod
    def create_pending(
        cls,
        requirements: PaymentRequirements,
        *,
        payment_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> "PaymentRecord":
        fields: dict[str, Any] = {"requirements": requirements}
        if payment_id is not None:
            fields["id"] = payment_id
        if metadata:
            fields["metadata"] = dict(metadata)
        return cls(**fields)

    def transition_to(
        self,
        new_state: PaymentState,
        *,
        payload: Optional[PaymentPayload] = None,
        transaction_hash: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> "PaymentRecord":
        if not self.state.can_transition_to(new_state):
            raise InvalidStateTransition(
                f"Invalid state transition from {self.state.value} to {new_state.value}"
            )
        return self.model_copy(
            update={
                "state": new_state,
                "payload": payload if payload is not None else self.payload,
                "transaction_hash": transaction_hash or self.transaction_hash,
                "error_message": error_message,
                "updated_at": datetime.now(timezone.utc),
            }
        )

    def is_final(self) -> bool:
        return self.state.is_final()

    def is_successful(self) -> bool:
        return self.state.is_successful()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "requirements": self.requirements.to_dict(),
            "payload": self.payload.to_dict() if self.payload else None,
            "state": self.state.value,
            "createdAt": self.serialize_created_at(self.created_at),
            "updatedAt": self.serialize_updated_at(self.updated_at),
            "transactionHash": self.transaction_hash,
            "errorMessage": self.error_message,
            "metadata": self.metadata,
        }
