"""HTTP client for a remote x402 facilitator."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Type
from types import TracebackType
from urllib.parse import urlsplit

import httpx
from pydantic import ValidationError as PydanticValidationError

from ...application.shared.validators import sanitize_url
from ...domain.entities import (
    PaymentRequirements,
    SettleResult,
    SupportedConfiguration,
    VerifyResult,
)
from ...domain.errors import (
    ConfigurationError,
    ErrorCode,
    FacilitatorError,
    FacilitatorUnavailable,
    ValidationError,
)
from ...domain.networks import X402_VERSION
from ..circuit_breaker import CircuitBreaker
from ..http.http_client import AsyncHttpClient

logger = logging.getLogger(__name__)

# Only these messages ever leave the client; upstream bodies are logged instead.
_STATUS_MESSAGES: dict[int, str] = {
    400: "Facilitator rejected the request",
    401: "Facilitator authentication failed",
    403: "Facilitator authentication failed",
    404: "Facilitator endpoint not found",
    422: "Facilitator rejected the request",
    429: "Facilitator rate limit exceeded",
}
_UNAVAILABLE_MESSAGE = "Facilitator temporarily unavailable"
_UNKNOWN_MESSAGE = "Facilitator request failed"
_INVALID_RESPONSE_MESSAGE = "Facilitator returned an invalid response"
_LOGGED_BODY_LIMIT = 500


class FacilitatorClient:
    """Talks to a facilitator's ``/verify``, ``/settle`` and ``/supported`` endpoints.

    Every request runs through a circuit breaker. Transport failures, 5xx
    answers and an open circuit raise ``FacilitatorUnavailable``; other
    non-2xx answers raise ``FacilitatorError``. Neither carries upstream text.
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        connect_timeout: float = 5.0,
        circuit_breaker: Optional[CircuitBreaker] = None,
        allow_insecure: bool = False,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        try:
            url = sanitize_url(base_url)
        except ValidationError as e:
            raise ConfigurationError(
                "Invalid facilitator URL", ErrorCode.INVALID_URL
            ) from e
        if urlsplit(url).scheme.lower() != "https" and not allow_insecure:
            raise ConfigurationError(
                "Facilitator URL must use https", ErrorCode.INVALID_URL
            )
        if timeout <= 0 or connect_timeout <= 0:
            raise ConfigurationError(
                "Facilitator timeouts must be positive", ErrorCode.INVALID_TIMEOUT
            )

        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        self.base_url = url.rstrip("/")
        self.circuit_breaker = circuit_breaker or CircuitBreaker()
        self._http = AsyncHttpClient(
            self.base_url,
            timeout=timeout,
            connect_timeout=connect_timeout,
            headers=headers,
            transport=transport,
        )

    async def verify(
        self, payment_header: str, requirements: PaymentRequirements
    ) -> VerifyResult:
        data = await self._request(
            "POST", "/verify", json=self._body(payment_header, requirements)
        )
        return self._parse(VerifyResult, data, "/verify")

    async def settle(
        self, payment_header: str, requirements: PaymentRequirements
    ) -> SettleResult:
        data = await self._request(
            "POST", "/settle", json=self._body(payment_header, requirements)
        )
        return self._parse(SettleResult, data, "/settle")

    async def get_supported(self) -> SupportedConfiguration:
        data = await self._request("GET", "/supported")
        return self._parse(SupportedConfiguration, data, "/supported")

    @staticmethod
    def _body(payment_header: str, requirements: PaymentRequirements) -> Dict[str, Any]:
        return {
            "x402Version": X402_VERSION,
            "paymentHeader": payment_header,
            "paymentRequirements": requirements.to_dict(),
        }

    async def _send(
        self, method: str, path: str, json: Optional[Dict[str, Any]]
    ) -> httpx.Response:
        try:
            return await self._http.request(method, path, json=json)
        except httpx.HTTPStatusError as e:
            # Only 5xx answers count against the circuit breaker.
            if e.response.status_code < 500:
                return e.response
            raise

    @staticmethod
    def _log_status(method: str, path: str, response: httpx.Response) -> None:
        logger.warning(
            "Facilitator %s %s returned %s",
            method,
            path,
            response.status_code,
            extra={
                "status_code": response.status_code,
                "body": response.text[:_LOGGED_BODY_LIMIT],
            },
        )

    async def _request(
        self, method: str, path: str, json: Optional[Dict[str, Any]] = None
    ) -> Any:
        try:
            response = await self.circuit_breaker.call(self._send, method, path, json)
        except httpx.HTTPStatusError as e:
            self._log_status(method, path, e.response)
            raise FacilitatorUnavailable(_UNAVAILABLE_MESSAGE) from e
        except httpx.HTTPError as e:
            logger.warning(
                "Facilitator %s %s failed: %s",
                method,
                path,
                e,
                extra={"error_type": type(e).__name__},
            )
            raise FacilitatorUnavailable(_UNAVAILABLE_MESSAGE) from e

        if not response.is_success:
            self._log_status(method, path, response)
            raise FacilitatorError(
                _STATUS_MESSAGES.get(response.status_code, _UNKNOWN_MESSAGE),
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            logger.warning(
                "Facilitator %s %s returned a non-JSON body",
                method,
                path,
                extra={"body": response.text[:_LOGGED_BODY_LIMIT]},
            )
            raise FacilitatorError(_INVALID_RESPONSE_MESSAGE) from e

    @staticmethod
    def _parse(model: Any, data: Any, path: str) -> Any:
        if not isinstance(data, dict):
            logger.warning("Facilitator %s returned a non-object body", path)
            raise FacilitatorError(_INVALID_RESPONSE_MESSAGE)
        try:
            return model.model_validate(data)
        except PydanticValidationError as e:
            logger.warning(
                "Facilitator %s returned an unexpected shape: %s", path, e
            )
            raise FacilitatorError(_INVALID_RESPONSE_MESSAGE) from e

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "FacilitatorClient":
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Optional[TracebackType],
    ) -> None:
        await self.aclose()
