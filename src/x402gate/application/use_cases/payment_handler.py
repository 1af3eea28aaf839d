"""Payment verification and settlement pipeline."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Sequence, Union

from ...domain.entities import (
    PaymentPayload,
    PaymentRequiredResponse,
    PaymentRequirements,
    SettleResult,
)
from ...domain.errors import (
    ComplianceError,
    ConfigurationError,
    ErrorCode,
    PaymentRejected,
    RateLimitExceeded,
    ReplayDetected,
    SettlementFailed,
    ValidationError,
    X402Error,
)
from ...domain.networks import X402_VERSION, is_transaction_network
from ...domain.nonce_tracker import NonceTracker
from ...domain.payment_state import PaymentRecord, PaymentState
from ...domain.rate_limiter import RateLimiter
from ...domain.shared import (
    ComplianceChecker,
    EventDispatcher,
    FacilitatorClientProtocol,
    MetricsSink,
)
from ..authorization import (
    BUFFER_DEFAULT_SECONDS,
    match_account_authorization,
    match_transaction_authorization,
)
from ..events import PaymentEvent, PaymentFailed, PaymentSettled, PaymentVerified
from ..shared.codec import (
    decode_payment_header,
    encode_payment_header,
    encode_payment_response_header,
)
from ..shared.tokens import validate_token_domain
from ..shared.validators import (
    is_supported_scheme,
    is_valid_address,
    is_valid_network,
    is_valid_uint_string,
    sanitize_string,
    sanitize_url,
)

logger = logging.getLogger(__name__)

PAYMENT_HEADER = "X-Payment"
PAYMENT_RESPONSE_HEADER = "X-Payment-Response"

# Replay markers live at least this long, even for authorizations about to expire.
MIN_NONCE_TTL_SECONDS = 60

_UNEXPECTED_ERROR_MESSAGE = "Payment could not be processed"

HeaderValue = Union[str, Sequence[str]]


@dataclass
class PaymentHandlerConfig:
    """Every optional collaborator and knob of ``PaymentHandler``."""

    facilitator: Optional[FacilitatorClientProtocol] = None
    nonce_tracker: Optional[NonceTracker] = None
    rate_limiter: Optional[RateLimiter] = None
    compliance_checker: Optional[ComplianceChecker] = None
    metrics: Optional[MetricsSink] = None
    event_dispatcher: Optional[EventDispatcher] = None
    logger: Optional[logging.Logger] = None
    auto_settle: bool = True
    valid_before_buffer_seconds: int = BUFFER_DEFAULT_SECONDS
    # Production flag: refuse to run without a facilitator.
    require_facilitator: bool = False
    clock: Callable[[], float] = time.time


@dataclass(frozen=True)
class PaymentResult:
    verified: bool
    payload: Optional[PaymentPayload] = None
    settlement: Optional[SettleResult] = None
    error_code: Optional[ErrorCode] = None
    error: Optional[str] = None
    record: Optional[PaymentRecord] = None


class PaymentHandler:
    """Verifies X-Payment headers against requirements and settles them.

    Local checks run first so that obviously bad payments never reach the
    facilitator: decode, protocol match, authorization match, compliance,
    replay and rate limit. The nonce is only consumed after the facilitator
    (when configured) accepted the payment.
    """

    def __init__(self, config: Optional[PaymentHandlerConfig] = None):
        self.config = config or PaymentHandlerConfig()
        if self.config.require_facilitator and self.config.facilitator is None:
            raise ConfigurationError(
                "A facilitator is required in production",
                ErrorCode.FACILITATOR_REQUIRED,
            )
        if self.config.valid_before_buffer_seconds < 0:
            raise ConfigurationError(
                "valid_before_buffer_seconds must not be negative",
                ErrorCode.INVALID_TIMEOUT,
            )
        self.facilitator = self.config.facilitator
        self.logger = self.config.logger or logger

    # ------------------------------------------------------------------
    # Requirements and 402 responses
    # ------------------------------------------------------------------

    def create_requirements(
        self,
        pay_to: str,
        amount: str,
        resource: str,
        description: str,
        asset: str,
        network: str = "base-sepolia",
        scheme: str = "exact",
        timeout: int = 300,
        mime_type: str = "application/json",
        extra: Optional[dict[str, Any]] = None,
        output_schema: Optional[dict[str, Any]] = None,
    ) -> PaymentRequirements:
        """Build validated payment requirements for one resource.

        Raises:
            ValidationError: If any field is malformed, or if the EIP-712
                domain in ``extra`` is missing or contradicts a known token.
        """
        if not is_valid_network(network):
            raise ValidationError(
                f"Unsupported network: {network}", ErrorCode.INVALID_NETWORK
            )
        if not is_supported_scheme(scheme):
            raise ValidationError(
                f"Unsupported scheme: {scheme}", ErrorCode.INVALID_SCHEME
            )
        if not is_valid_address(pay_to, network):
            raise ValidationError("Invalid payTo address", ErrorCode.INVALID_ADDRESS)
        if not is_valid_address(asset, network):
            raise ValidationError("Invalid asset address", ErrorCode.INVALID_ADDRESS)
        if not is_valid_uint_string(amount):
            raise ValidationError("Invalid amount format", ErrorCode.INVALID_AMOUNT)
        if timeout <= 0:
            raise ValidationError(
                "Timeout must be positive", ErrorCode.INVALID_TIMEOUT
            )
        if not is_transaction_network(network):
            validate_token_domain(network, asset, extra)

        return PaymentRequirements(
            scheme=scheme,
            network=network,
            max_amount_required=amount,
            resource=sanitize_url(resource),
            description=sanitize_string(description),
            mime_type=mime_type,
            pay_to=pay_to,
            max_timeout_seconds=timeout,
            asset=asset,
            output_schema=output_schema,
            extra=extra,
        )

    def create_payment_required_response(
        self, requirements: PaymentRequirements, error: str = ""
    ) -> PaymentRequiredResponse:
        return PaymentRequiredResponse(
            x402_version=X402_VERSION, accepts=[requirements], error=error
        )

    @staticmethod
    def extract_payment_header(headers: Mapping[str, HeaderValue]) -> Optional[str]:
        """Case-insensitive lookup of ``X-Payment``; list values yield their first element."""
        wanted = PAYMENT_HEADER.lower()
        for key, value in headers.items():
            if key.lower() != wanted:
                continue
            if isinstance(value, str):
                return value
            return value[0] if value else None
        return None

    @staticmethod
    def create_payment_response_header(
        settlement: Union[SettleResult, Mapping[str, Any]],
    ) -> str:
        return encode_payment_response_header(settlement)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    async def verify(
        self,
        header: str,
        requirements: PaymentRequirements,
        identifier: Optional[str] = None,
    ) -> PaymentPayload:
        """Run the verification pipeline for one X-Payment header.

        Args:
            header: The raw X-Payment header value
            requirements: Requirements the payment must satisfy
            identifier: Caller identity for rate limiting (IP, API key...);
                rate limiting is skipped when omitted

        Returns:
            The decoded payload, after its nonce has been consumed

        Raises:
            ConfigurationError: Transaction-based network without facilitator.
            ValidationError: The header could not be decoded.
            PaymentRejected: Protocol or authorization mismatch, or the
                facilitator reported the payment invalid.
            ComplianceError: Payer or recipient is blocked.
            ReplayDetected: The nonce was already used.
            RateLimitExceeded: Too many attempts for ``identifier``.
            FacilitatorUnavailable: Facilitator unreachable or circuit open.
        """
        started = time.perf_counter()
        payload: Optional[PaymentPayload] = None
        try:
            if is_transaction_network(requirements.network) and self.facilitator is None:
                raise ConfigurationError(
                    "Transaction-based payments require a facilitator",
                    ErrorCode.FACILITATOR_REQUIRED,
                )
            payload = decode_payment_header(header)
            self._match_protocol(payload, requirements)
            now = self.config.clock()
            if is_transaction_network(requirements.network):
                match_transaction_authorization(payload)
            else:
                match_account_authorization(
                    payload,
                    requirements,
                    now,
                    self.config.valid_before_buffer_seconds,
                )
            await self._check_compliance(payload, requirements)
            await self._check_replay(payload)
            await self._check_rate_limit(identifier)
            await self._verify_with_facilitator(header, requirements)
            await self._consume_nonce(payload, now)
        except X402Error as e:
            self._on_verify_failure(e, requirements, payload, started)
            raise

        if self.config.rate_limiter is not None and identifier is not None:
            await self.config.rate_limiter.record_success(identifier)
        self.logger.info(
            "Payment verified",
            extra={
                "network": payload.network,
                "scheme": payload.scheme,
                "resource": requirements.resource,
            },
        )
        self._emit(PaymentVerified(requirements=requirements, payload=payload))
        self._increment(
            "x402_payments_verified_total",
            {"network": payload.network, "scheme": payload.scheme},
        )
        self._timing("x402_verify_duration_seconds", started, "success")
        return payload

    @staticmethod
    def _match_protocol(
        payload: PaymentPayload, requirements: PaymentRequirements
    ) -> None:
        if payload.x402_version != X402_VERSION:
            raise PaymentRejected(
                f"Unsupported x402 version: {payload.x402_version}",
                ErrorCode.INVALID_VERSION,
            )
        if payload.scheme != requirements.scheme:
            raise PaymentRejected("Payment scheme mismatch", ErrorCode.INVALID_SCHEME)
        if payload.network != requirements.network:
            raise PaymentRejected(
                "Payment network mismatch", ErrorCode.INVALID_NETWORK
            )

    async def _check_compliance(
        self, payload: PaymentPayload, requirements: PaymentRequirements
    ) -> None:
        checker = self.config.compliance_checker
        if checker is None:
            return
        addresses = [requirements.pay_to]
        if payload.authorization is not None:
            addresses.insert(0, payload.authorization.from_)
        for address in addresses:
            result = await checker.check_address(address, requirements.network)
            if result.blocked:
                self.logger.warning(
                    "Compliance check blocked address",
                    extra={"address": address, "reason": result.reason},
                )
                raise ComplianceError(
                    "Address blocked by compliance check",
                    ErrorCode.ADDRESS_BLOCKED,
                    address=address,
                )

    async def _check_replay(self, payload: PaymentPayload) -> None:
        tracker = self.config.nonce_tracker
        if tracker is None or payload.authorization is None:
            return
        if await tracker.has_nonce(payload.authorization.nonce):
            raise ReplayDetected("Nonce has already been used")

    async def _check_rate_limit(self, identifier: Optional[str]) -> None:
        limiter = self.config.rate_limiter
        if limiter is None or identifier is None:
            return
        if not await limiter.admit(identifier):
            raise RateLimitExceeded("Too many payment attempts")

    async def _verify_with_facilitator(
        self, header: str, requirements: PaymentRequirements
    ) -> None:
        if self.facilitator is None:
            return
        result = await self.facilitator.verify(header, requirements)
        if not result.is_valid:
            reason = result.invalid_reason or "unknown"
            raise PaymentRejected(
                f"Payment verification failed: {reason}",
                ErrorCode.FACILITATOR_VERIFICATION_FAILED,
                reason=result.invalid_reason,
            )

    async def _consume_nonce(self, payload: PaymentPayload, now: float) -> None:
        tracker = self.config.nonce_tracker
        authorization = payload.authorization
        if tracker is None or authorization is None:
            return
        ttl = max(MIN_NONCE_TTL_SECONDS, int(authorization.valid_before) - int(now))
        if not await tracker.mark_used(authorization.nonce, ttl):
            # Another request consumed the nonce between the check and now.
            raise ReplayDetected("Nonce has already been used")

    def _on_verify_failure(
        self,
        error: X402Error,
        requirements: PaymentRequirements,
        payload: Optional[PaymentPayload],
        started: float,
    ) -> None:
        self.logger.info(
            "Payment verification failed: %s",
            error.message,
            extra={"code": error.code.value, "network": requirements.network},
        )
        self._emit(
            PaymentFailed(
                requirements=requirements,
                payload=payload,
                reason=error.message,
                error_code=error.code.value,
            )
        )
        self._increment("x402_payments_failed_total", {"code": error.code.value})
        self._timing("x402_verify_duration_seconds", started, "failure")

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    async def settle(
        self,
        payload: PaymentPayload,
        requirements: PaymentRequirements,
        payment_header: Optional[str] = None,
    ) -> SettleResult:
        """Settle a verified payment through the facilitator, exactly once.

        ``payment_header`` is forwarded as received when given; otherwise the
        payload is re-encoded. A failed settlement is terminal and is never
        retried here.

        Raises:
            ConfigurationError: No facilitator configured.
            SettlementFailed: The facilitator reported failure.
        """
        if self.facilitator is None:
            raise ConfigurationError(
                "Facilitator required for payment settlement",
                ErrorCode.FACILITATOR_REQUIRED,
            )
        header = payment_header or encode_payment_header(payload)
        started = time.perf_counter()
        try:
            result = await self.facilitator.settle(header, requirements)
        except X402Error as e:
            self._on_settle_failure(e.message, e.code, payload, requirements, started)
            raise
        if not result.success:
            reason = result.error_reason or "unknown"
            self._on_settle_failure(
                reason, ErrorCode.SETTLEMENT_FAILED, payload, requirements, started
            )
            raise SettlementFailed(f"Payment settlement failed: {reason}")

        self.logger.info(
            "Payment settled",
            extra={"network": requirements.network, "transaction": result.transaction},
        )
        self._emit(
            PaymentSettled(
                requirements=requirements, payload=payload, settlement=result
            )
        )
        self._increment(
            "x402_payments_settled_total", {"network": requirements.network}
        )
        self._timing("x402_settle_duration_seconds", started, "success")
        return result

    def _on_settle_failure(
        self,
        reason: str,
        code: ErrorCode,
        payload: PaymentPayload,
        requirements: PaymentRequirements,
        started: float,
    ) -> None:
        self.logger.warning(
            "Payment settlement failed: %s",
            reason,
            extra={"code": code.value, "network": requirements.network},
        )
        self._emit(
            PaymentFailed(
                requirements=requirements,
                payload=payload,
                reason=reason,
                error_code=code.value,
            )
        )
        self._increment(
            "x402_settlements_failed_total", {"network": requirements.network}
        )
        self._timing("x402_settle_duration_seconds", started, "failure")

    # ------------------------------------------------------------------
    # Full flow
    # ------------------------------------------------------------------

    async def process_payment(
        self,
        headers: Mapping[str, HeaderValue],
        requirements: PaymentRequirements,
        identifier: Optional[str] = None,
    ) -> PaymentResult:
        """Extract, verify and (optionally) settle. Never raises.

        Failures are reported through ``error_code`` / ``error``; the returned
        ``record`` shows how far the payment got.
        """
        record = PaymentRecord.create_pending(requirements)
        header = self.extract_payment_header(headers)
        if header is None:
            return PaymentResult(
                verified=False,
                error_code=ErrorCode.PAYMENT_REQUIRED,
                error="Payment required",
                record=record,
            )

        record = record.transition_to(PaymentState.VERIFYING)
        try:
            payload = await self.verify(header, requirements, identifier)
        except X402Error as e:
            state = (
                PaymentState.EXPIRED
                if e.code is ErrorCode.INVALID_EVM_VALID_BEFORE
                else PaymentState.FAILED
            )
            return self._failed(record.transition_to(state, error_message=e.message), e)
        except Exception:
            self.logger.exception("Unexpected error while verifying payment")
            return self._unexpected(record)

        record = record.transition_to(PaymentState.VERIFIED, payload=payload)
        if not self.config.auto_settle or self.facilitator is None:
            return PaymentResult(verified=True, payload=payload, record=record)

        record = record.transition_to(PaymentState.SETTLING)
        try:
            settlement = await self.settle(payload, requirements, header)
        except X402Error as e:
            record = record.transition_to(PaymentState.FAILED, error_message=e.message)
            return self._failed(record, e, payload)
        except Exception:
            self.logger.exception("Unexpected error while settling payment")
            return self._unexpected(record, payload)

        record = record.transition_to(
            PaymentState.SETTLED, transaction_hash=settlement.transaction
        )
        return PaymentResult(
            verified=True, payload=payload, settlement=settlement, record=record
        )

    @staticmethod
    def _failed(
        record: PaymentRecord,
        error: X402Error,
        payload: Optional[PaymentPayload] = None,
    ) -> PaymentResult:
        return PaymentResult(
            verified=False,
            payload=payload,
            error_code=error.code,
            error=error.message,
            record=record,
        )

    @staticmethod
    def _unexpected(
        record: PaymentRecord, payload: Optional[PaymentPayload] = None
    ) -> PaymentResult:
        return PaymentResult(
            verified=False,
            payload=payload,
            error_code=ErrorCode.PAYMENT_REQUIRED,
            error=_UNEXPECTED_ERROR_MESSAGE,
            record=record.transition_to(
                PaymentState.FAILED, error_message=_UNEXPECTED_ERROR_MESSAGE
            ),
        )

    # ------------------------------------------------------------------
    # Collaborators
    # ------------------------------------------------------------------

    def _emit(self, event: PaymentEvent) -> None:
        dispatcher = self.config.event_dispatcher
        if dispatcher is None:
            return
        try:
            dispatcher.dispatch(event)
        except Exception:
            self.logger.exception(
                "Event listener failed", extra={"event": event.event_name}
            )

    def _increment(self, name: str, tags: dict[str, str]) -> None:
        if self.config.metrics is not None:
            self.config.metrics.increment(name, tags=tags)

    def _timing(self, name: str, started: float, outcome: str) -> None:
        if self.config.metrics is not None:
            self.config.metrics.timing(
                name, time.perf_counter() - started, tags={"outcome": outcome}
            )
