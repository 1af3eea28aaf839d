"""Use case tests for PaymentHandler - fast tests using in-memory collaborators."""

from __future__ import annotations

import asyncio
import base64
import json
from dataclasses import replace

import httpx
import pytest

from x402gate.application.events import PaymentEvent, SimpleEventDispatcher
from x402gate.application.use_cases.payment_handler import (
    PaymentHandler,
    PaymentHandlerConfig,
)
from x402gate.domain.entities import SettleResult, VerifyResult
from x402gate.domain.errors import (
    ComplianceError,
    ConfigurationError,
    ErrorCode,
    FacilitatorUnavailable,
    PaymentRejected,
    RateLimitExceeded,
    ReplayDetected,
    SettlementFailed,
    ValidationError,
)
from x402gate.domain.payment_state import PaymentState
from x402gate.infrastructure.circuit_breaker import CircuitBreaker, CircuitOpenError
from x402gate.infrastructure.compliance import StaticBlocklistComplianceChecker
from x402gate.infrastructure.facilitator.facilitator_client import FacilitatorClient
from x402gate.infrastructure.metrics import InMemoryMetrics
from x402gate.infrastructure.nonce_tracker_impl import StoreNonceTracker
from x402gate.infrastructure.rate_limiter_impl import SlidingWindowRateLimiter
from tests.fixtures import FakeClock, FakeFacilitator, YieldingKeyValueStore
from tests.fixtures.payments import (
    BASE_SEPOLIA_USDC,
    NOW,
    PAY_TO,
    PAYER,
    SOLANA_PAY_TO,
    SOLANA_USDC,
    account_payment,
    account_requirements,
    encode_header,
    new_nonce,
    transaction_payment,
    transaction_requirements,
)


# ============================================================================
# Verification
# ============================================================================


@pytest.mark.asyncio
async def test_valid_payment_verifies_once_then_replay_is_rejected(
    handler: PaymentHandler,
    facilitator: FakeFacilitator,
    nonce_tracker: StoreNonceTracker,
) -> None:
    """A verified nonce is consumed; presenting the same header again is a replay."""
    nonce = new_nonce()
    header = encode_header(account_payment(nonce=nonce))
    requirements = account_requirements()

    payload = await handler.verify(header, requirements)

    assert payload.authorization is not None
    assert payload.authorization.nonce == nonce
    assert await nonce_tracker.has_nonce(nonce)
    assert facilitator.verify_calls == [(header, requirements)]

    with pytest.raises(ReplayDetected) as exc_info:
        await handler.verify(header, requirements)
    assert exc_info.value.code is ErrorCode.NONCE_ALREADY_USED
    # The replay never reaches the facilitator.
    assert len(facilitator.verify_calls) == 1


@pytest.mark.asyncio
async def test_facilitator_rejection_passes_reason_through(
    handler: PaymentHandler,
    facilitator: FakeFacilitator,
    nonce_tracker: StoreNonceTracker,
) -> None:
    """The facilitator's invalid reason is kept verbatim and the nonce stays unused."""
    facilitator.verify_result = VerifyResult(
        is_valid=False, invalid_reason="insufficient_funds"
    )
    nonce = new_nonce()
    header = encode_header(account_payment(nonce=nonce))

    with pytest.raises(PaymentRejected) as exc_info:
        await handler.verify(header, account_requirements())

    assert exc_info.value.code is ErrorCode.FACILITATOR_VERIFICATION_FAILED
    assert exc_info.value.reason == "insufficient_funds"
    assert "insufficient_funds" in exc_info.value.message
    assert not await nonce_tracker.has_nonce(nonce)

    # Once the facilitator accepts, the very same header goes through.
    facilitator.verify_result = VerifyResult(is_valid=True)
    payload = await handler.verify(header, account_requirements())
    assert payload.authorization is not None


@pytest.mark.asyncio
async def test_transaction_network_without_facilitator_fails_closed(
    handler_config: PaymentHandlerConfig,
) -> None:
    """No facilitator means no transaction-based payments, whatever the header holds."""
    handler = PaymentHandler(replace(handler_config, facilitator=None))

    for header in ("!!!not-base64!!!", encode_header(transaction_payment())):
        with pytest.raises(ConfigurationError) as exc_info:
            await handler.verify(header, transaction_requirements())
        assert exc_info.value.code is ErrorCode.FACILITATOR_REQUIRED


@pytest.mark.asyncio
async def test_account_network_without_facilitator_verifies_locally(
    handler_config: PaymentHandlerConfig,
) -> None:
    handler = PaymentHandler(replace(handler_config, facilitator=None))

    payload = await handler.verify(
        encode_header(account_payment()), account_requirements()
    )

    assert payload.network == "base-sepolia"


@pytest.mark.asyncio
async def test_transaction_payment_verified_by_facilitator(
    handler: PaymentHandler, facilitator: FakeFacilitator
) -> None:
    header = encode_header(transaction_payment())

    payload = await handler.verify(header, transaction_requirements())

    assert payload.authorization is None
    assert len(facilitator.verify_calls) == 1


@pytest.mark.asyncio
async def test_open_circuit_fails_fast(
    handler_config: PaymentHandlerConfig,
) -> None:
    """After repeated facilitator outages the circuit opens and upstream is skipped."""
    upstream_calls = 0

    def transport_handler(request: httpx.Request) -> httpx.Response:
        nonlocal upstream_calls
        upstream_calls += 1
        return httpx.Response(503, text="maintenance")

    client = FacilitatorClient(
        "https://facilitator.example.com",
        circuit_breaker=CircuitBreaker(failure_threshold=2, recovery_timeout=30),
        transport=httpx.MockTransport(transport_handler),
    )
    handler = PaymentHandler(replace(handler_config, facilitator=client))
    header = encode_header(account_payment())

    for _ in range(2):
        with pytest.raises(FacilitatorUnavailable) as exc_info:
            await handler.verify(header, account_requirements())
        assert exc_info.value.code is ErrorCode.FACILITATOR_UNAVAILABLE

    with pytest.raises(CircuitOpenError) as exc_info:
        await handler.verify(header, account_requirements())

    assert exc_info.value.code is ErrorCode.CIRCUIT_OPEN
    assert exc_info.value.message == "Facilitator temporarily unavailable"
    assert upstream_calls == 2
    await client.aclose()


@pytest.mark.asyncio
async def test_rate_limit_counts_failed_attempts(
    handler: PaymentHandler, facilitator: FakeFacilitator
) -> None:
    facilitator.verify_result = VerifyResult(is_valid=False, invalid_reason="bad")
    requirements = account_requirements()

    for _ in range(2):
        with pytest.raises(PaymentRejected):
            await handler.verify(
                encode_header(account_payment()), requirements, "203.0.113.7"
            )

    with pytest.raises(RateLimitExceeded) as exc_info:
        await handler.verify(
            encode_header(account_payment()), requirements, "203.0.113.7"
        )
    assert exc_info.value.code is ErrorCode.RATE_LIMIT_EXCEEDED
    assert len(facilitator.verify_calls) == 2

    # Other callers are unaffected.
    facilitator.verify_result = VerifyResult(is_valid=True)
    await handler.verify(encode_header(account_payment()), requirements, "198.51.100.1")


@pytest.mark.asyncio
async def test_concurrent_attempts_cannot_slip_past_rate_limit(
    handler_config: PaymentHandlerConfig,
    facilitator: FakeFacilitator,
    clock: FakeClock,
) -> None:
    limiter = SlidingWindowRateLimiter(
        YieldingKeyValueStore(clock=clock), max_attempts=3, window_seconds=60, clock=clock
    )
    handler = PaymentHandler(replace(handler_config, rate_limiter=limiter))
    facilitator.verify_result = VerifyResult(is_valid=False, invalid_reason="bad")
    requirements = account_requirements()

    results = await asyncio.gather(
        *(
            handler.verify(encode_header(account_payment()), requirements, "203.0.113.7")
            for _ in range(20)
        ),
        return_exceptions=True,
    )

    assert len(facilitator.verify_calls) == 3
    assert sum(isinstance(r, PaymentRejected) for r in results) == 3
    assert sum(isinstance(r, RateLimitExceeded) for r in results) == 17


@pytest.mark.asyncio
async def test_successful_payments_do_not_use_up_attempts(
    handler: PaymentHandler,
) -> None:
    for _ in range(4):
        await handler.verify(
            encode_header(account_payment()), account_requirements(), "203.0.113.7"
        )


@pytest.mark.asyncio
async def test_rate_limit_window_slides(
    handler: PaymentHandler, facilitator: FakeFacilitator, clock: FakeClock
) -> None:
    facilitator.verify_result = VerifyResult(is_valid=False, invalid_reason="bad")
    for _ in range(2):
        with pytest.raises(PaymentRejected):
            await handler.verify(
                encode_header(account_payment()), account_requirements(), "caller"
            )

    clock.advance(61)
    facilitator.verify_result = VerifyResult(is_valid=True)

    await handler.verify(
        encode_header(account_payment(now=clock.now)), account_requirements(), "caller"
    )


@pytest.mark.asyncio
async def test_blocked_payer_is_rejected_before_facilitator(
    handler_config: PaymentHandlerConfig, facilitator: FakeFacilitator
) -> None:
    handler = PaymentHandler(
        replace(
            handler_config,
            compliance_checker=StaticBlocklistComplianceChecker([PAYER]),
        )
    )

    with pytest.raises(ComplianceError) as exc_info:
        await handler.verify(encode_header(account_payment()), account_requirements())

    assert exc_info.value.code is ErrorCode.ADDRESS_BLOCKED
    assert exc_info.value.address == PAYER
    assert facilitator.verify_calls == []


@pytest.mark.asyncio
async def test_blocked_recipient_is_rejected(
    handler_config: PaymentHandlerConfig,
) -> None:
    handler = PaymentHandler(
        replace(
            handler_config,
            compliance_checker=StaticBlocklistComplianceChecker([PAY_TO]),
        )
    )

    with pytest.raises(ComplianceError) as exc_info:
        await handler.verify(encode_header(account_payment()), account_requirements())
    assert exc_info.value.address == PAY_TO


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides, code",
    [
        ({"version": 2}, ErrorCode.INVALID_VERSION),
        ({"network": "base-mainnet"}, ErrorCode.INVALID_NETWORK),
        ({"to": PAYER}, ErrorCode.INVALID_EVM_RECIPIENT),
        ({"value": "9999"}, ErrorCode.INVALID_EVM_VALUE),
        ({"valid_after": str(int(NOW) + 60)}, ErrorCode.INVALID_EVM_VALID_AFTER),
        ({"valid_before": str(int(NOW) + 3)}, ErrorCode.INVALID_EVM_VALID_BEFORE),
    ],
)
async def test_mismatched_authorization_rejected_locally(
    handler: PaymentHandler,
    facilitator: FakeFacilitator,
    overrides: dict,
    code: ErrorCode,
) -> None:
    header = encode_header(account_payment(**overrides))

    with pytest.raises(PaymentRejected) as exc_info:
        await handler.verify(header, account_requirements())

    assert exc_info.value.code is code
    assert facilitator.verify_calls == []


@pytest.mark.asyncio
async def test_malformed_header_is_a_validation_error(
    handler: PaymentHandler, metrics: InMemoryMetrics
) -> None:
    with pytest.raises(ValidationError):
        await handler.verify("%%%", account_requirements())

    assert metrics.count("x402_payments_failed_total", code="invalid_payload") == 1


@pytest.mark.asyncio
async def test_nonce_marker_lives_until_valid_before(
    handler: PaymentHandler, store, clock: FakeClock
) -> None:
    nonce = new_nonce()
    await handler.verify(
        encode_header(account_payment(nonce=nonce, valid_before=str(int(NOW) + 3600))),
        account_requirements(),
    )

    assert store.ttl(f"x402:nonce:default:{nonce}") == 3600


@pytest.mark.asyncio
async def test_nonce_marker_has_minimum_ttl(
    handler: PaymentHandler, store, clock: FakeClock
) -> None:
    nonce = new_nonce()
    await handler.verify(
        encode_header(account_payment(nonce=nonce, valid_before=str(int(NOW) + 10))),
        account_requirements(),
    )

    assert store.ttl(f"x402:nonce:default:{nonce}") == 60


# ============================================================================
# Construction and requirements
# ============================================================================


def test_require_facilitator_without_facilitator_is_refused() -> None:
    with pytest.raises(ConfigurationError) as exc_info:
        PaymentHandler(PaymentHandlerConfig(require_facilitator=True))
    assert exc_info.value.code is ErrorCode.FACILITATOR_REQUIRED


def test_negative_buffer_is_refused() -> None:
    with pytest.raises(ConfigurationError):
        PaymentHandler(PaymentHandlerConfig(valid_before_buffer_seconds=-1))


def test_create_requirements(handler: PaymentHandler) -> None:
    requirements = handler.create_requirements(
        pay_to=PAY_TO,
        amount="10000",
        resource="https://api.example.com/premium",
        description="Premium <data>",
        asset=BASE_SEPOLIA_USDC,
        extra={"name": "USD Coin", "version": "2"},
    )

    assert requirements.network == "base-sepolia"
    assert requirements.scheme == "exact"
    assert requirements.max_timeout_seconds == 300
    assert requirements.description == "Premium &lt;data&gt;"
    assert requirements.to_dict()["maxAmountRequired"] == "10000"


def test_create_requirements_for_transaction_network(handler: PaymentHandler) -> None:
    requirements = handler.create_requirements(
        pay_to=SOLANA_PAY_TO,
        amount="10000",
        resource="https://api.example.com/premium",
        description="Premium data",
        asset=SOLANA_USDC,
        network="solana-devnet",
    )

    assert requirements.extra is None


@pytest.mark.parametrize(
    "overrides, code",
    [
        ({"network": "dogecoin"}, ErrorCode.INVALID_NETWORK),
        ({"scheme": "upto"}, ErrorCode.INVALID_SCHEME),
        ({"pay_to": "0x1234"}, ErrorCode.INVALID_ADDRESS),
        ({"amount": "-5"}, ErrorCode.INVALID_AMOUNT),
        ({"timeout": 0}, ErrorCode.INVALID_TIMEOUT),
        ({"resource": "ftp://files.example.com"}, ErrorCode.INVALID_URL),
        ({"extra": None}, ErrorCode.INVALID_EIP712_DOMAIN),
        ({"extra": {"name": "USDC", "version": "2"}}, ErrorCode.INVALID_EIP712_DOMAIN),
    ],
)
def test_create_requirements_rejects_bad_input(
    handler: PaymentHandler, overrides: dict, code: ErrorCode
) -> None:
    fields = {
        "pay_to": PAY_TO,
        "amount": "10000",
        "resource": "https://api.example.com/premium",
        "description": "Premium data",
        "asset": BASE_SEPOLIA_USDC,
        "extra": {"name": "USD Coin", "version": "2"},
    }
    fields.update(overrides)

    with pytest.raises(ValidationError) as exc_info:
        handler.create_requirements(**fields)
    assert exc_info.value.code is code


def test_payment_required_response(handler: PaymentHandler) -> None:
    body = handler.create_payment_required_response(
        account_requirements(), error="Payment required"
    )

    data = body.to_dict()
    assert data["x402Version"] == 1
    assert data["error"] == "Payment required"
    assert data["accepts"][0]["payTo"] == PAY_TO
    assert body.headers()["WWW-Authenticate"] == "X-Payment"


def test_extract_payment_header() -> None:
    assert PaymentHandler.extract_payment_header({"x-payment": "abc"}) == "abc"
    assert PaymentHandler.extract_payment_header({"X-PAYMENT": ["abc", "def"]}) == "abc"
    assert PaymentHandler.extract_payment_header({"X-Payment": []}) is None
    assert PaymentHandler.extract_payment_header({"Accept": "*/*"}) is None


def test_create_payment_response_header() -> None:
    header = PaymentHandler.create_payment_response_header(
        SettleResult(success=True, transaction="0xabc", network="base-sepolia")
    )

    decoded = json.loads(base64.b64decode(header))
    assert decoded == {
        "success": True,
        "transaction": "0xabc",
        "network": "base-sepolia",
    }


# ============================================================================
# Settlement
# ============================================================================


@pytest.mark.asyncio
async def test_settle_forwards_original_header(
    handler: PaymentHandler, facilitator: FakeFacilitator, metrics: InMemoryMetrics
) -> None:
    header = encode_header(account_payment())
    requirements = account_requirements()
    payload = await handler.verify(header, requirements)

    result = await handler.settle(payload, requirements, header)

    assert result.success is True
    assert facilitator.settle_calls == [(header, requirements)]
    assert metrics.count("x402_payments_settled_total", network="base-sepolia") == 1


@pytest.mark.asyncio
async def test_settle_reencodes_payload_without_header(
    handler: PaymentHandler, facilitator: FakeFacilitator
) -> None:
    requirements = account_requirements()
    payload = await handler.verify(encode_header(account_payment()), requirements)

    await handler.settle(payload, requirements)

    sent_header, _ = facilitator.settle_calls[0]
    decoded = json.loads(base64.b64decode(sent_header))
    assert decoded["payload"]["authorization"]["nonce"] == payload.authorization.nonce


@pytest.mark.asyncio
async def test_failed_settlement_is_not_retried(
    handler: PaymentHandler, facilitator: FakeFacilitator, metrics: InMemoryMetrics
) -> None:
    facilitator.settle_result = SettleResult(
        success=False, error_reason="insufficient_funds"
    )
    requirements = account_requirements()
    payload = await handler.verify(encode_header(account_payment()), requirements)

    with pytest.raises(SettlementFailed) as exc_info:
        await handler.settle(payload, requirements)

    assert exc_info.value.code is ErrorCode.SETTLEMENT_FAILED
    assert "insufficient_funds" in exc_info.value.message
    assert len(facilitator.settle_calls) == 1
    assert metrics.count("x402_settlements_failed_total") == 1


@pytest.mark.asyncio
async def test_settle_without_facilitator_is_refused(
    handler_config: PaymentHandlerConfig,
) -> None:
    handler = PaymentHandler(replace(handler_config, facilitator=None))
    requirements = account_requirements()
    payload = await handler.verify(encode_header(account_payment()), requirements)

    with pytest.raises(ConfigurationError):
        await handler.settle(payload, requirements)


# ============================================================================
# Full flow
# ============================================================================


@pytest.mark.asyncio
async def test_process_payment_settles(
    handler: PaymentHandler, facilitator: FakeFacilitator
) -> None:
    header = encode_header(account_payment())

    result = await handler.process_payment({"X-Payment": header}, account_requirements())

    assert result.verified is True
    assert result.settlement is not None
    assert result.settlement.transaction == "0x" + "cd" * 32
    assert result.error_code is None
    assert result.record.state is PaymentState.SETTLED
    assert result.record.transaction_hash == "0x" + "cd" * 32
    assert len(facilitator.settle_calls) == 1


@pytest.mark.asyncio
async def test_process_payment_without_header(handler: PaymentHandler) -> None:
    result = await handler.process_payment({}, account_requirements())

    assert result.verified is False
    assert result.error_code is ErrorCode.PAYMENT_REQUIRED
    assert result.error == "Payment required"
    assert result.record.state is PaymentState.PENDING


@pytest.mark.asyncio
async def test_process_payment_without_auto_settle(
    handler_config: PaymentHandlerConfig, facilitator: FakeFacilitator
) -> None:
    handler = PaymentHandler(replace(handler_config, auto_settle=False))

    result = await handler.process_payment(
        {"X-Payment": encode_header(account_payment())}, account_requirements()
    )

    assert result.verified is True
    assert result.settlement is None
    assert result.record.state is PaymentState.VERIFIED
    assert facilitator.settle_calls == []


@pytest.mark.asyncio
async def test_process_payment_expired_authorization(handler: PaymentHandler) -> None:
    header = encode_header(account_payment(valid_before=str(int(NOW) + 3)))

    result = await handler.process_payment({"X-Payment": header}, account_requirements())

    assert result.verified is False
    assert result.error_code is ErrorCode.INVALID_EVM_VALID_BEFORE
    assert result.record.state is PaymentState.EXPIRED


@pytest.mark.asyncio
async def test_process_payment_replay_fails(handler: PaymentHandler) -> None:
    headers = {"X-Payment": encode_header(account_payment())}
    await handler.process_payment(headers, account_requirements())

    result = await handler.process_payment(headers, account_requirements())

    assert result.verified is False
    assert result.error_code is ErrorCode.NONCE_ALREADY_USED
    assert result.record.state is PaymentState.FAILED
    assert result.record.error_message == "Nonce has already been used"


@pytest.mark.asyncio
async def test_process_payment_settlement_failure(
    handler: PaymentHandler, facilitator: FakeFacilitator
) -> None:
    """A failed settlement is reported as unverified and never retried."""
    facilitator.settle_result = SettleResult(success=False, error_reason="reverted")

    result = await handler.process_payment(
        {"X-Payment": encode_header(account_payment())}, account_requirements()
    )

    assert result.verified is False
    assert result.error_code is ErrorCode.SETTLEMENT_FAILED
    assert result.payload is not None
    assert result.record.state is PaymentState.FAILED
    assert len(facilitator.settle_calls) == 1


@pytest.mark.asyncio
async def test_process_payment_unexpected_error_is_contained(
    handler: PaymentHandler, facilitator: FakeFacilitator
) -> None:
    facilitator.verify_error = RuntimeError("connection pool exploded")

    result = await handler.process_payment(
        {"X-Payment": encode_header(account_payment())}, account_requirements()
    )

    assert result.verified is False
    assert result.error_code is ErrorCode.PAYMENT_REQUIRED
    assert result.error == "Payment could not be processed"
    assert "exploded" not in result.error
    assert result.record.state is PaymentState.FAILED


# ============================================================================
# Events and metrics
# ============================================================================


@pytest.mark.asyncio
async def test_events_are_dispatched(
    handler: PaymentHandler, dispatcher: SimpleEventDispatcher
) -> None:
    seen: list[PaymentEvent] = []
    for name in ("payment.verified", "payment.settled", "payment.failed"):
        dispatcher.listen(name, seen.append)
    headers = {"X-Payment": encode_header(account_payment())}

    await handler.process_payment(headers, account_requirements())
    await handler.process_payment(headers, account_requirements())

    assert [event.event_name for event in seen] == [
        "payment.verified",
        "payment.settled",
        "payment.failed",
    ]
    assert seen[2].error_code == "nonce_already_used"


@pytest.mark.asyncio
async def test_failing_listener_does_not_break_payment(
    handler: PaymentHandler, dispatcher: SimpleEventDispatcher
) -> None:
    def explode(event: PaymentEvent) -> None:
        raise RuntimeError("listener down")

    dispatcher.listen("payment.verified", explode)

    result = await handler.process_payment(
        {"X-Payment": encode_header(account_payment())}, account_requirements()
    )

    assert result.verified is True


@pytest.mark.asyncio
async def test_metrics_are_recorded(
    handler: PaymentHandler, metrics: InMemoryMetrics
) -> None:
    await handler.process_payment(
        {"X-Payment": encode_header(account_payment())}, account_requirements()
    )

    assert (
        metrics.count(
            "x402_payments_verified_total", network="base-sepolia", scheme="exact"
        )
        == 1
    )
    assert metrics.count("x402_payments_settled_total") == 1
    outcomes = [dict(tags)["outcome"] for tags, _ in metrics.timings["x402_verify_duration_seconds"]]
    assert outcomes == ["success"]
