"""Protocol interface for facilitator client implementations.

The payment handler depends on this protocol rather than on the HTTP client,
so tests and alternative transports can supply their own implementation.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional, Protocol, Type
from types import TracebackType

if TYPE_CHECKING:
    from ..entities import (
        PaymentRequirements,
        SettleResult,
        SupportedConfiguration,
        VerifyResult,
    )


class FacilitatorClientProtocol(Protocol):
    """Contract for talking to a remote x402 facilitator.

    Implementations must never let raw upstream error text escape: failures
    surface as ``FacilitatorUnavailable`` or ``FacilitatorError`` with a
    sanitized message.
    """

    async def verify(
        self, payment_header: str, requirements: "PaymentRequirements"
    ) -> "VerifyResult":
        """Ask the facilitator whether the encoded payment is valid.

        Args:
            payment_header: The base64 X-Payment header exactly as received
            requirements: Requirements the payment must satisfy

        Returns:
            Verification result reported by the facilitator
        """
        ...

    async def settle(
        self, payment_header: str, requirements: "PaymentRequirements"
    ) -> "SettleResult":
        """Ask the facilitator to broadcast and settle the payment.

        Args:
            payment_header: The base64 X-Payment header exactly as received
            requirements: Requirements the payment satisfied

        Returns:
            Settlement result reported by the facilitator
        """
        ...

    async def get_supported(self) -> "SupportedConfiguration":
        """Return the schemes, networks and features the facilitator supports."""
        ...

    async def aclose(self) -> None:
        ...

    async def __aenter__(self: "FacilitatorClientProtocol") -> "FacilitatorClientProtocol":
        ...

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Optional[TracebackType],
    ) -> None:
        ...
