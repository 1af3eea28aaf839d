"""HMAC-SHA256 verification of facilitator webhook signatures."""

from __future__ import annotations

import hashlib
import hmac
from typing import Mapping, Optional, Sequence, Union

from ..domain.errors import ConfigurationError

WEBHOOK_SIGNATURE_HEADER = "X-Webhook-Signature"


class HmacWebhookVerifier:
    """Checks a hex HMAC-SHA256 of the raw request body in constant time."""

    def __init__(self, secret: Union[str, bytes]):
        if not secret:
            raise ConfigurationError("Webhook secret cannot be empty")
        self._secret = secret.encode("utf-8") if isinstance(secret, str) else secret

    def sign(self, payload: bytes) -> str:
        return hmac.new(self._secret, payload, hashlib.sha256).hexdigest()

    def verify_signature(self, payload: bytes, signature: str) -> bool:
        if not signature:
            return False
        return hmac.compare_digest(self.sign(payload), signature.strip().lower())


def extract_signature(
    headers: Mapping[str, Union[str, Sequence[str]]],
    header_name: str = WEBHOOK_SIGNATURE_HEADER,
) -> Optional[str]:
    """Case-insensitive header lookup; list values yield their first element."""
    wanted = header_name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            if isinstance(value, str):
                return value
            return value[0] if value else None
    return None
