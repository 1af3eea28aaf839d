"""Domain-specific exceptions and stable error codes."""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    """Machine-readable reason codes shared with other x402 implementations."""

    # General
    INVALID_VERSION = "invalid_version"
    INVALID_SCHEME = "invalid_scheme"
    INVALID_NETWORK = "invalid_network"
    INVALID_PAYLOAD = "invalid_payload"
    INVALID_AMOUNT = "invalid_amount"
    AMOUNT_OVERFLOW = "amount_overflow"
    INVALID_ADDRESS = "invalid_address"
    INVALID_URL = "invalid_url"
    INVALID_TIMEOUT = "invalid_timeout"

    # Exact scheme, account-based networks
    INVALID_EVM_SIGNATURE = "invalid_exact_evm_payload_signature"
    INVALID_EVM_RECIPIENT = "invalid_exact_evm_payload_recipient_mismatch"
    INVALID_EVM_VALUE = "invalid_exact_evm_payload_authorization_value"
    INVALID_EVM_VALID_AFTER = "invalid_exact_evm_payload_authorization_valid_after"
    INVALID_EVM_VALID_BEFORE = "invalid_exact_evm_payload_authorization_valid_before"
    INVALID_EIP712_DOMAIN = "invalid_eip712_domain"

    # Exact scheme, transaction-based networks
    INVALID_SVM_TRANSACTION = "invalid_exact_svm_payload_transaction"

    # Payment
    PAYMENT_REQUIRED = "payment_required"
    SETTLEMENT_FAILED = "settlement_failed"
    INVALID_TRANSACTION_STATE = "invalid_transaction_state"

    # Facilitator
    FACILITATOR_ERROR = "facilitator_error"
    FACILITATOR_VERIFICATION_FAILED = "facilitator_verification_failed"
    FACILITATOR_REQUIRED = "facilitator_required"
    FACILITATOR_UNAVAILABLE = "facilitator_unavailable"
    CIRCUIT_OPEN = "circuit_open"

    # Abuse and replay
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    NONCE_ALREADY_USED = "nonce_already_used"
    INVALID_NONCE = "invalid_nonce"

    # Compliance
    COMPLIANCE_CHECK_FAILED = "compliance_check_failed"
    ADDRESS_BLOCKED = "address_blocked"

    # Configuration
    CONFIGURATION_ERROR = "configuration_error"


class X402Error(Exception):
    """Base class for every error raised by the payment pipeline.

    ``code`` is stable and safe to branch on; ``message`` is safe to show to
    the paying client.
    """

    default_code = ErrorCode.PAYMENT_REQUIRED

    def __init__(self, message: str, code: Optional[ErrorCode] = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code.value, "message": self.message}


class ValidationError(X402Error):
    """Raised for malformed or out-of-range input."""

    default_code = ErrorCode.INVALID_PAYLOAD


class AmountOverflowError(ValidationError):
    """Raised when uint256 arithmetic would exceed 2^256 - 1."""

    default_code = ErrorCode.AMOUNT_OVERFLOW


class PaymentRejected(X402Error):
    """Raised when an authorization cannot satisfy the payment requirements."""

    def __init__(
        self,
        message: str,
        code: Optional[ErrorCode] = None,
        *,
        reason: Optional[str] = None,
    ) -> None:
        super().__init__(message, code)
        # Facilitator-provided reason, passed through verbatim.
        self.reason = reason


class ReplayDetected(X402Error):
    """Raised when a nonce has already been consumed."""

    default_code = ErrorCode.NONCE_ALREADY_USED


class RateLimitExceeded(X402Error):
    """Raised when a caller exceeded its attempt window."""

    default_code = ErrorCode.RATE_LIMIT_EXCEEDED


class ComplianceError(X402Error):
    """Raised when a compliance checker blocks an address."""

    default_code = ErrorCode.ADDRESS_BLOCKED

    def __init__(
        self,
        message: str,
        code: Optional[ErrorCode] = None,
        *,
        address: str = "",
    ) -> None:
        super().__init__(message, code)
        self.address = address


class FacilitatorUnavailable(X402Error):
    """Raised when the facilitator cannot be reached or the circuit is open."""

    default_code = ErrorCode.FACILITATOR_UNAVAILABLE


class FacilitatorError(X402Error):
    """Raised when the facilitator answered with a non-success status."""

    default_code = ErrorCode.FACILITATOR_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[ErrorCode] = None,
        *,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message, code)
        self.status_code = status_code


class SettlementFailed(X402Error):
    """Raised when the facilitator reports a failed settlement. Never retried."""

    default_code = ErrorCode.SETTLEMENT_FAILED


class ConfigurationError(X402Error):
    """Raised when the pipeline is configured in an unsafe or invalid way."""

    default_code = ErrorCode.CONFIGURATION_ERROR
