"""Pytest fixtures for payment handler use case tests."""

from __future__ import annotations

import pytest

from x402gate.application.events import SimpleEventDispatcher
from x402gate.application.use_cases.payment_handler import (
    PaymentHandler,
    PaymentHandlerConfig,
)
from x402gate.infrastructure.metrics import InMemoryMetrics
from x402gate.infrastructure.nonce_tracker_impl import StoreNonceTracker
from x402gate.infrastructure.rate_limiter_impl import SlidingWindowRateLimiter
from tests.fixtures import FakeClock, FakeFacilitator, InMemoryKeyValueStore


@pytest.fixture
def nonce_tracker(
    store: InMemoryKeyValueStore, clock: FakeClock
) -> StoreNonceTracker:
    return StoreNonceTracker(store, clock=clock)


@pytest.fixture
def rate_limiter(
    store: InMemoryKeyValueStore, clock: FakeClock
) -> SlidingWindowRateLimiter:
    return SlidingWindowRateLimiter(store, max_attempts=2, window_seconds=60, clock=clock)


@pytest.fixture
def metrics() -> InMemoryMetrics:
    return InMemoryMetrics()


@pytest.fixture
def dispatcher() -> SimpleEventDispatcher:
    return SimpleEventDispatcher()


@pytest.fixture
def handler_config(
    facilitator: FakeFacilitator,
    nonce_tracker: StoreNonceTracker,
    rate_limiter: SlidingWindowRateLimiter,
    metrics: InMemoryMetrics,
    dispatcher: SimpleEventDispatcher,
    clock: FakeClock,
) -> PaymentHandlerConfig:
    """Fully wired configuration; tests replace fields as needed."""
    return PaymentHandlerConfig(
        facilitator=facilitator,
        nonce_tracker=nonce_tracker,
        rate_limiter=rate_limiter,
        metrics=metrics,
        event_dispatcher=dispatcher,
        clock=clock,
    )


@pytest.fixture
def handler(handler_config: PaymentHandlerConfig) -> PaymentHandler:
    return PaymentHandler(handler_config)
