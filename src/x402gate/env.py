from __future__ import annotations

import os
from typing import Mapping, Optional
from urllib.parse import urlsplit

from pydantic import BaseModel, Field, field_validator, model_validator

from .application.use_cases.payment_handler import PaymentHandler, PaymentHandlerConfig
from .infrastructure.circuit_breaker import CircuitBreaker
from .infrastructure.database import DatabaseClient
from .infrastructure.facilitator.facilitator_client import FacilitatorClient
from .infrastructure.metrics import PrometheusMetrics
from .infrastructure.nonce_tracker_impl import StoreNonceTracker
from .infrastructure.rate_limiter_impl import SlidingWindowRateLimiter
from .infrastructure.storage import RedisKeyValueStore


class Settings(BaseModel):
    """Typed x402gate settings built from environment variables."""

    # Facilitator
    facilitator_url: Optional[str] = None
    facilitator_api_key: Optional[str] = None
    timeout: float = Field(30.0, ge=1, le=300)
    connect_timeout: float = Field(5.0, ge=1, le=60)
    allow_insecure_facilitator: bool = False

    # Pipeline
    auto_settle: bool = True
    buffer_seconds: int = Field(6, ge=0)
    require_facilitator: bool = False

    # Replay and rate-limit store
    redis_url: str = "redis://localhost:6379/0"
    namespace: str = "default"
    rate_limit_max_attempts: int = Field(10, gt=0)
    rate_limit_window_seconds: int = Field(60, gt=0)

    # Circuit breaker
    circuit_failure_threshold: int = Field(5, gt=0)
    circuit_recovery_timeout: float = Field(60.0, gt=0)
    circuit_success_threshold: int = Field(2, gt=0)

    @field_validator("facilitator_url")
    @classmethod
    def validate_facilitator_url(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        parts = urlsplit(v.strip())
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise ValueError(f"Invalid facilitator URL: {v}")
        return v.strip().rstrip("/")

    @field_validator("namespace")
    @classmethod
    def validate_namespace(cls, v: str) -> str:
        if not v or ":" in v:
            raise ValueError("Namespace must be non-empty and must not contain ':'")
        return v

    @model_validator(mode="after")
    def validate_production(self) -> "Settings":
        if self.require_facilitator:
            if self.facilitator_url is None:
                raise ValueError("Facilitator URL is required in production")
            if not self.facilitator_url.startswith("https://"):
                raise ValueError("Facilitator URL must use https in production")
        return self


def _flag(value: Optional[str], default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def get_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Return typed settings instance sourced from env vars."""
    env = os.environ if environ is None else environ
    return Settings(
        facilitator_url=env.get("X402_FACILITATOR_URL") or env.get("FACILITATOR_URL"),
        facilitator_api_key=env.get("X402_FACILITATOR_API_KEY") or None,
        timeout=env.get("X402_TIMEOUT", "30"),
        connect_timeout=env.get("X402_CONNECT_TIMEOUT", "5"),
        allow_insecure_facilitator=_flag(
            env.get("X402_ALLOW_INSECURE_FACILITATOR"), False
        ),
        auto_settle=_flag(env.get("X402_AUTO_SETTLE"), True),
        buffer_seconds=env.get("X402_BUFFER_SECONDS", "6"),
        require_facilitator=_flag(env.get("X402_REQUIRE_FACILITATOR"), False),
        redis_url=env.get("X402_REDIS_URL", "redis://localhost:6379/0"),
        namespace=env.get("X402_NAMESPACE", "default"),
        rate_limit_max_attempts=env.get("X402_RATE_LIMIT_MAX_ATTEMPTS", "10"),
        rate_limit_window_seconds=env.get("X402_RATE_LIMIT_WINDOW_SECONDS", "60"),
        circuit_failure_threshold=env.get("X402_CIRCUIT_FAILURE_THRESHOLD", "5"),
        circuit_recovery_timeout=env.get("X402_CIRCUIT_RECOVERY_TIMEOUT", "60"),
        circuit_success_threshold=env.get("X402_CIRCUIT_SUCCESS_THRESHOLD", "2"),
    )


def build_payment_handler(settings: Settings) -> PaymentHandler:
    """Wire a Redis-backed payment handler from settings."""
    facilitator = None
    if settings.facilitator_url is not None:
        facilitator = FacilitatorClient(
            settings.facilitator_url,
            api_key=settings.facilitator_api_key,
            timeout=settings.timeout,
            connect_timeout=settings.connect_timeout,
            circuit_breaker=CircuitBreaker(
                failure_threshold=settings.circuit_failure_threshold,
                recovery_timeout=settings.circuit_recovery_timeout,
                success_threshold=settings.circuit_success_threshold,
            ),
            allow_insecure=settings.allow_insecure_facilitator,
        )

    store = RedisKeyValueStore(DatabaseClient(settings))
    return PaymentHandler(
        PaymentHandlerConfig(
            facilitator=facilitator,
            nonce_tracker=StoreNonceTracker(store, namespace=settings.namespace),
            rate_limiter=SlidingWindowRateLimiter(
                store,
                max_attempts=settings.rate_limit_max_attempts,
                window_seconds=settings.rate_limit_window_seconds,
                namespace=settings.namespace,
            ),
            metrics=PrometheusMetrics(),
            auto_settle=settings.auto_settle,
            valid_before_buffer_seconds=settings.buffer_seconds,
            require_facilitator=settings.require_facilitator,
        )
    )
