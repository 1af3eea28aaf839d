"""Matching a decoded authorization against the payment requirements.

Pure functions: the current time and the validBefore buffer are passed in.
Signature recovery is not done here; the facilitator owns that.
"""

from __future__ import annotations

import math

from ..domain.entities import (
    ExactAccountPayload,
    ExactTransactionPayload,
    PaymentPayload,
    PaymentRequirements,
)
from ..domain.errors import ErrorCode, PaymentRejected, ValidationError
from .shared.validators import (
    compare_uint_strings,
    validate_domain_parameters,
    validate_transaction_blob,
)

# Recommended validBefore buffers, in seconds. The buffer covers the time a
# settlement needs to land on-chain after verification.
BUFFER_FAST_CHAIN_SECONDS = 2
BUFFER_DEFAULT_SECONDS = 6
BUFFER_SLOW_CHAIN_SECONDS = 36


def match_account_authorization(
    payload: PaymentPayload,
    requirements: PaymentRequirements,
    now: float,
    buffer_seconds: int = BUFFER_DEFAULT_SECONDS,
) -> None:
    """Check an account-based authorization against the requirements.

    Raises:
        PaymentRejected: With the code of the first field that does not match.
    """
    if not isinstance(payload.payload, ExactAccountPayload):
        raise PaymentRejected(
            "Expected an account-based authorization", ErrorCode.INVALID_PAYLOAD
        )
    authorization = payload.payload.authorization

    if authorization.to.lower() != requirements.pay_to.lower():
        raise PaymentRejected(
            "Payment recipient does not match", ErrorCode.INVALID_EVM_RECIPIENT
        )

    try:
        value_matches = (
            compare_uint_strings(authorization.value, requirements.max_amount_required)
            == 0
        )
    except ValidationError as e:
        raise PaymentRejected(
            "Payment amount is not a valid unsigned integer",
            ErrorCode.INVALID_EVM_VALUE,
        ) from e
    if not value_matches:
        raise PaymentRejected(
            "Payment amount does not match", ErrorCode.INVALID_EVM_VALUE
        )

    if int(authorization.valid_after) > now:
        raise PaymentRejected(
            "Authorization is not yet valid", ErrorCode.INVALID_EVM_VALID_AFTER
        )
    if int(authorization.valid_before) < math.ceil(now) + buffer_seconds:
        raise PaymentRejected(
            "Authorization expires too soon", ErrorCode.INVALID_EVM_VALID_BEFORE
        )

    try:
        validate_domain_parameters(requirements.extra)
    except ValidationError as e:
        raise PaymentRejected(e.message, ErrorCode.INVALID_EIP712_DOMAIN) from e


def match_transaction_authorization(payload: PaymentPayload) -> None:
    """Structural re-check of a transaction payload before it goes upstream."""
    if not isinstance(payload.payload, ExactTransactionPayload):
        raise PaymentRejected(
            "Expected a transaction-based payload", ErrorCode.INVALID_SVM_TRANSACTION
        )
    try:
        validate_transaction_blob(payload.payload.transaction)
    except ValidationError as e:
        raise PaymentRejected(e.message, ErrorCode.INVALID_SVM_TRANSACTION) from e
