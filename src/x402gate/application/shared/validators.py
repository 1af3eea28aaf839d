"""Pure validation and sanitization functions for x402 protocol data.

These functions hold no state and perform no I/O so they can be tested in
isolation. Predicates return booleans; everything else raises
``ValidationError`` carrying a stable ``ErrorCode``.
"""

from __future__ import annotations

import base64
import binascii
import html
import re
from typing import Any, Mapping, Optional
from urllib.parse import urlsplit

from ...domain.errors import AmountOverflowError, ErrorCode, ValidationError
from ...domain.networks import (
    SUPPORTED_NETWORKS,
    SUPPORTED_SCHEMES,
    is_transaction_network,
)

UINT256_MAX = 2**256 - 1
UINT256_MAX_STR = str(UINT256_MAX)
UINT256_MAX_DIGITS = len(UINT256_MAX_STR)  # 78

_EVM_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}\Z")
# Base58 alphabet: no 0, O, I or l.
_SOLANA_ADDRESS_RE = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}\Z")
_NONCE_RE = re.compile(r"^0x[a-fA-F0-9]{64}\Z")
_SIGNATURE_RE = re.compile(r"^0x[a-fA-F0-9]{130}\Z")
_UINT_RE = re.compile(r"^[0-9]+\Z")
# Control characters except tab, newline and carriage return.
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")

DOMAIN_NAME_MAX_LENGTH = 100
DOMAIN_VERSION_MAX_LENGTH = 20


# ---------------------------------------------------------------------------
# Addresses, nonces, signatures
# ---------------------------------------------------------------------------


def is_valid_evm_address(address: str) -> bool:
    return bool(_EVM_ADDRESS_RE.match(address))


def is_valid_solana_address(address: str) -> bool:
    return bool(_SOLANA_ADDRESS_RE.match(address))


def is_valid_address(address: str, network: str) -> bool:
    """Format-only address check for the network's family.

    Does not check that the address exists on-chain.
    """
    if is_transaction_network(network):
        return is_valid_solana_address(address)
    return is_valid_evm_address(address)


def is_valid_nonce(nonce: str) -> bool:
    """A nonce is 32 bytes written as ``0x`` + 64 hex characters."""
    return bool(_NONCE_RE.match(nonce))


def is_valid_signature(signature: str) -> bool:
    """A 65-byte ECDSA signature written as ``0x`` + 130 hex characters."""
    return bool(_SIGNATURE_RE.match(signature))


# ---------------------------------------------------------------------------
# Networks and schemes
# ---------------------------------------------------------------------------


def is_valid_network(network: str) -> bool:
    return network in SUPPORTED_NETWORKS


def is_supported_scheme(scheme: str) -> bool:
    return scheme in SUPPORTED_SCHEMES


# ---------------------------------------------------------------------------
# Unsigned 256-bit amounts
# ---------------------------------------------------------------------------


def is_valid_uint_string(value: str) -> bool:
    """Check that ``value`` is a canonical uint256 decimal string.

    Only digits, no leading zeros (except ``"0"`` itself), and not above
    2^256 - 1. At exactly 78 digits the value is compared lexicographically
    against the known maximum, which is exact for equal-length digit strings.
    """
    if not isinstance(value, str) or not _UINT_RE.match(value):
        return False
    if len(value) > 1 and value[0] == "0":
        return False
    if len(value) > UINT256_MAX_DIGITS:
        return False
    if len(value) == UINT256_MAX_DIGITS and value > UINT256_MAX_STR:
        return False
    return True


def compare_uint_strings(a: str, b: str) -> int:
    """Compare two unsigned decimal strings without converting to a number.

    Leading zeros are ignored. Returns -1, 0 or 1.
    """
    if not _UINT_RE.match(a) or not _UINT_RE.match(b):
        raise ValidationError(
            "Amounts must be unsigned decimal strings", ErrorCode.INVALID_AMOUNT
        )
    a = a.lstrip("0") or "0"
    b = b.lstrip("0") or "0"
    if len(a) != len(b):
        return -1 if len(a) < len(b) else 1
    if a == b:
        return 0
    return -1 if a < b else 1


def _require_uint(value: str, position: str) -> int:
    if not is_valid_uint_string(value):
        raise ValidationError(
            f"{position} operand is not a valid uint256 string",
            ErrorCode.INVALID_AMOUNT,
        )
    return int(value)


def _check_overflow(result: int) -> str:
    if result > UINT256_MAX:
        raise AmountOverflowError("Amount overflow: result exceeds uint256 max")
    return str(result)


def safe_add_uint256(a: str, b: str) -> str:
    """Add two uint256 strings, raising ``AmountOverflowError`` instead of wrapping."""
    return _check_overflow(_require_uint(a, "First") + _require_uint(b, "Second"))


def safe_mul_uint256(a: str, b: str) -> str:
    """Multiply two uint256 strings, raising ``AmountOverflowError`` instead of wrapping."""
    return _check_overflow(_require_uint(a, "First") * _require_uint(b, "Second"))


# ---------------------------------------------------------------------------
# EIP-712 domain parameters
# ---------------------------------------------------------------------------


def validate_domain_parameters(extra: Optional[Mapping[str, Any]]) -> None:
    """Require the EIP-712 domain ``name`` and ``version`` in ``extra``.

    Only presence and shape are checked; whether they match the token
    contract is the facilitator's job.

    Raises:
        ValidationError: With ``ErrorCode.INVALID_EIP712_DOMAIN``.
    """
    extra = extra or {}
    for key, max_length in (
        ("name", DOMAIN_NAME_MAX_LENGTH),
        ("version", DOMAIN_VERSION_MAX_LENGTH),
    ):
        value = extra.get(key)
        if not isinstance(value, str):
            raise ValidationError(
                f"EIP-712 domain {key} required in extra field",
                ErrorCode.INVALID_EIP712_DOMAIN,
            )
        stripped = value.strip()
        if not stripped:
            raise ValidationError(
                f"EIP-712 domain {key} cannot be empty",
                ErrorCode.INVALID_EIP712_DOMAIN,
            )
        if len(stripped) > max_length:
            raise ValidationError(
                f"EIP-712 domain {key} is too long (max {max_length} characters)",
                ErrorCode.INVALID_EIP712_DOMAIN,
            )


# ---------------------------------------------------------------------------
# Sanitization
# ---------------------------------------------------------------------------


def sanitize_string(value: str, max_length: int = 1000) -> str:
    """Strip control characters, truncate, then HTML-escape (quotes included)."""
    cleaned = _CONTROL_CHARS_RE.sub("", value)
    if len(cleaned) > max_length:
        cleaned = cleaned[:max_length]
    return html.escape(cleaned, quote=True)


def sanitize_url(url: str) -> str:
    """Return ``url`` stripped of surrounding whitespace if it is a safe http(s) URL.

    Raises:
        ValidationError: With ``ErrorCode.INVALID_URL`` for missing or
            non-http(s) schemes, missing hosts, or embedded whitespace.
    """
    candidate = url.strip()
    if not candidate or any(ch.isspace() for ch in candidate):
        raise ValidationError("Invalid URL format", ErrorCode.INVALID_URL)
    try:
        parts = urlsplit(candidate)
    except ValueError as e:
        raise ValidationError("Invalid URL format", ErrorCode.INVALID_URL) from e
    if not parts.scheme:
        raise ValidationError("URL must include a scheme", ErrorCode.INVALID_URL)
    if parts.scheme.lower() not in ("http", "https"):
        raise ValidationError(
            "URL must use http or https scheme", ErrorCode.INVALID_URL
        )
    if not parts.netloc:
        raise ValidationError("URL must include a host", ErrorCode.INVALID_URL)
    return candidate


# ---------------------------------------------------------------------------
# Transaction blobs
# ---------------------------------------------------------------------------

_BASE64_RE = re.compile(r"^[A-Za-z0-9+/]+={0,2}\Z")
TRANSACTION_MIN_BYTES = 100
TRANSACTION_MAX_BYTES = 1500


def validate_transaction_blob(transaction: Any) -> bytes:
    """Structurally check an opaque base64 transaction and return its bytes.

    Only shape is checked here (non-empty, strict base64, plausible size);
    the facilitator is the only party that can judge the transaction itself.
    """
    if not isinstance(transaction, str):
        raise ValidationError(
            "Transaction must be a string", ErrorCode.INVALID_SVM_TRANSACTION
        )
    if transaction == "":
        raise ValidationError("Transaction is empty", ErrorCode.INVALID_SVM_TRANSACTION)
    if not _BASE64_RE.match(transaction):
        raise ValidationError(
            "Invalid base64-encoded transaction", ErrorCode.INVALID_SVM_TRANSACTION
        )
    try:
        decoded = base64.b64decode(transaction, validate=True)
    except binascii.Error as e:
        raise ValidationError(
            "Invalid base64-encoded transaction", ErrorCode.INVALID_SVM_TRANSACTION
        ) from e
    if not TRANSACTION_MIN_BYTES <= len(decoded) <= TRANSACTION_MAX_BYTES:
        raise ValidationError(
            f"Transaction has invalid length (expected {TRANSACTION_MIN_BYTES}-"
            f"{TRANSACTION_MAX_BYTES} bytes)",
            ErrorCode.INVALID_SVM_TRANSACTION,
        )
    return decoded
