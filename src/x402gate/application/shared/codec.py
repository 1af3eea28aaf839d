"""Encoding and decoding of the X-Payment and X-Payment-Response headers.

The header is the base64 of a JSON object. Decoding is strict: the raw bytes
must be canonical base64, the text must be UTF-8, the JSON must be an object,
and the object must pass the structural checks below before it is turned into
a typed ``PaymentPayload``.
"""

from __future__ import annotations

import base64
import binascii
import json
from typing import Any, Mapping, Union

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from ...domain.entities import PaymentPayload, SettleResult
from ...domain.errors import ErrorCode, ValidationError
from ...domain.networks import is_transaction_network
from .validators import (
    is_supported_scheme,
    is_valid_evm_address,
    is_valid_nonce,
    is_valid_signature,
    is_valid_uint_string,
    validate_transaction_blob,
)

_AUTHORIZATION_FIELDS: tuple[tuple[str, str], ...] = (
    ("from", "from_"),
    ("to", "to"),
    ("value", "value"),
    ("validAfter", "valid_after"),
    ("validBefore", "valid_before"),
    ("nonce", "nonce"),
)


def encode_json(data: Any) -> str:
    """Serialize ``data`` to compact JSON, accepting pydantic models."""
    if isinstance(data, BaseModel):
        data = data.model_dump(by_alias=True, exclude_none=True)
    try:
        return json.dumps(data, separators=(",", ":"), ensure_ascii=False)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Failed to encode JSON: {e}") from e


def decode_json(text: str) -> Any:
    try:
        return json.loads(text)
    except (TypeError, ValueError) as e:
        raise ValidationError("Invalid JSON in payment data") from e


def _b64encode_json(data: Any) -> str:
    return base64.b64encode(encode_json(data).encode("utf-8")).decode("ascii")


def encode_payment_header(payload: PaymentPayload) -> str:
    """Encode a payment payload as an X-Payment header value."""
    return _b64encode_json(payload.to_dict())


def encode_payment_response_header(
    settlement: Union[SettleResult, Mapping[str, Any]],
) -> str:
    """Encode a settlement result as an X-Payment-Response header value."""
    if isinstance(settlement, SettleResult):
        return _b64encode_json(settlement.to_dict())
    return _b64encode_json(dict(settlement))


def decode_payment_header(header: str) -> PaymentPayload:
    """Decode and structurally validate an X-Payment header.

    Args:
        header: The raw header value (base64 JSON)

    Returns:
        The typed payment payload

    Raises:
        ValidationError: ``invalid_payload`` for encoding or shape problems,
            or a field-specific code (signature, address, amount, nonce,
            transaction) when one field is malformed.
    """
    if not isinstance(header, str) or not header.strip():
        raise ValidationError("Payment header is empty")
    try:
        raw = base64.b64decode(header.strip(), validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValidationError("Invalid base64 encoding in payment header") from e
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError as e:
        raise ValidationError("Payment header is not valid UTF-8") from e

    data = decode_json(text)
    if not isinstance(data, dict):
        raise ValidationError("Payment payload must be a JSON object")

    validate_payment_data(data)

    try:
        return PaymentPayload.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError("Payment payload has an invalid structure") from e


def validate_payment_data(data: Mapping[str, Any]) -> None:
    """Structural checks on a decoded payment object.

    Only shape and format are checked here; matching against requirements
    happens later in the pipeline.
    """
    version = data.get("x402Version", data.get("x402_version"))
    if version is None:
        raise ValidationError("Missing required field: x402Version")
    if isinstance(version, bool) or not isinstance(version, int):
        raise ValidationError("x402Version must be an integer")
    for key in ("scheme", "network"):
        if not isinstance(data.get(key), str) or not data[key]:
            raise ValidationError(f"Missing required field: {key}")
    if not is_supported_scheme(data["scheme"]):
        raise ValidationError(
            f"Unsupported scheme: {data['scheme']}", ErrorCode.INVALID_SCHEME
        )
    payload = data.get("payload")
    if not isinstance(payload, dict):
        raise ValidationError("Missing required field: payload")

    if is_transaction_network(data["network"]):
        if "transaction" not in payload:
            raise ValidationError(
                "Missing transaction in payload", ErrorCode.INVALID_SVM_TRANSACTION
            )
        validate_transaction_blob(payload["transaction"])
    else:
        _validate_account_payload(payload)


def _validate_account_payload(payload: Mapping[str, Any]) -> None:
    signature = payload.get("signature")
    if not isinstance(signature, str) or not is_valid_signature(signature):
        raise ValidationError(
            "Invalid signature format", ErrorCode.INVALID_EVM_SIGNATURE
        )

    authorization = payload.get("authorization")
    if not isinstance(authorization, dict):
        raise ValidationError("Missing authorization in payload")

    fields: dict[str, Any] = {}
    for wire_name, attr_name in _AUTHORIZATION_FIELDS:
        value = authorization.get(wire_name, authorization.get(attr_name))
        if not isinstance(value, str) or value == "":
            raise ValidationError(f"Missing authorization field: {wire_name}")
        fields[wire_name] = value

    for wire_name in ("from", "to"):
        if not is_valid_evm_address(fields[wire_name]):
            raise ValidationError(
                f"Invalid {wire_name} address format", ErrorCode.INVALID_ADDRESS
            )
    if not is_valid_uint_string(fields["value"]):
        raise ValidationError("Invalid value format", ErrorCode.INVALID_AMOUNT)
    for wire_name in ("validAfter", "validBefore"):
        if not is_valid_uint_string(fields[wire_name]):
            raise ValidationError(f"Invalid {wire_name} timestamp")
    if not is_valid_nonce(fields["nonce"]):
        raise ValidationError("Invalid nonce format", ErrorCode.INVALID_NONCE)
