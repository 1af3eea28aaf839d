"""FastAPI dependencies gating routes on an x402 payment."""

from __future__ import annotations

from functools import lru_cache
from typing import Callable, Optional, Sequence, Union

from fastapi import Depends, FastAPI, Request, Response

from ..application.use_cases.payment_handler import PaymentHandler, PaymentResult
from ..domain.entities import PaymentRequirements
from ..env import build_payment_handler, get_settings
from .responses import payment_required_response, payment_success_headers


@lru_cache(maxsize=1)
def get_payment_handler() -> PaymentHandler:
    """Get the process-wide payment handler built from environment settings."""
    return build_payment_handler(get_settings())


def client_identifier(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


class PaymentRequiredError(Exception):
    """Raised by ``PaymentGate``; rendered as a 402 by ``install_payment_handlers``."""

    def __init__(
        self,
        requirements: Sequence[PaymentRequirements],
        error: str = "",
        code: Optional[str] = None,
    ) -> None:
        super().__init__(error)
        self.requirements = list(requirements)
        self.error = error
        self.code = code


async def payment_required_exception_handler(
    request: Request, exc: PaymentRequiredError
) -> Response:
    return payment_required_response(exc.requirements, exc.error)


def install_payment_handlers(app: FastAPI) -> None:
    app.add_exception_handler(PaymentRequiredError, payment_required_exception_handler)


class PaymentGate:
    """Route dependency that admits a request only once its payment is verified.

    Usage::

        gate = PaymentGate(requirements)

        @app.get("/premium")
        async def premium(payment: PaymentResult = Depends(gate)) -> dict: ...

    Every requirement is advertised in the 402 body; the request is verified
    against the first one. Success headers (``X-Payment-Response`` ...) are
    added to the route's response.
    """

    def __init__(
        self,
        requirements: Union[PaymentRequirements, Sequence[PaymentRequirements]],
        identifier: Callable[[Request], Optional[str]] = client_identifier,
    ) -> None:
        self.requirements = (
            [requirements]
            if isinstance(requirements, PaymentRequirements)
            else list(requirements)
        )
        if not self.requirements:
            raise ValueError("PaymentGate needs at least one payment requirement")
        self.identifier = identifier

    async def __call__(
        self,
        request: Request,
        response: Response,
        handler: PaymentHandler = Depends(get_payment_handler),
    ) -> PaymentResult:
        result = await handler.process_payment(
            request.headers, self.requirements[0], self.identifier(request)
        )
        if not result.verified:
            raise PaymentRequiredError(
                self.requirements,
                result.error or "",
                result.error_code.value if result.error_code else None,
            )
        response.headers.update(
            payment_success_headers(result.settlement, result.payload)
        )
        return result
