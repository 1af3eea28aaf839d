"""Starlette response builders for 402 and paid responses."""

from __future__ import annotations

from typing import Optional, Sequence, Union

from fastapi.responses import JSONResponse

from ..application.shared.codec import encode_payment_response_header
from ..application.use_cases.payment_handler import PAYMENT_RESPONSE_HEADER
from ..domain.entities import (
    PaymentPayload,
    PaymentRequiredResponse,
    PaymentRequirements,
    SettleResult,
)
from ..domain.networks import X402_VERSION

PAYMENT_REQUIRED_STATUS = 402


def payment_required_response(
    requirements: Union[PaymentRequirements, Sequence[PaymentRequirements]],
    error: str = "",
) -> JSONResponse:
    """Build a 402 response. Headers are passed at construction time."""
    accepts = (
        [requirements]
        if isinstance(requirements, PaymentRequirements)
        else list(requirements)
    )
    body = PaymentRequiredResponse(
        x402_version=X402_VERSION, accepts=accepts, error=error
    )
    return JSONResponse(
        content=body.to_dict(),
        status_code=PAYMENT_REQUIRED_STATUS,
        headers=body.headers(),
    )


def payment_success_headers(
    settlement: Optional[SettleResult] = None,
    payload: Optional[PaymentPayload] = None,
) -> dict[str, str]:
    """Headers for a paid response: the encoded settlement and what is known about it."""
    headers: dict[str, str] = {}
    if settlement is not None:
        headers[PAYMENT_RESPONSE_HEADER] = encode_payment_response_header(settlement)
        if settlement.transaction:
            headers["X-Payment-Transaction"] = settlement.transaction
        if settlement.network:
            headers["X-Payment-Network"] = settlement.network
    if payload is not None:
        headers.setdefault("X-Payment-Network", payload.network)
        headers["X-Payment-Scheme"] = payload.scheme
    return headers
