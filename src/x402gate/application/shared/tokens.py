"""Registry of well-known tokens and their EIP-712 domain parameters."""

from __future__ import annotations

from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict

from ...domain.errors import ErrorCode, ValidationError
from .validators import validate_domain_parameters


class KnownToken(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    version: str
    symbol: str
    decimals: int


_USDC = KnownToken(name="USD Coin", version="2", symbol="USDC", decimals=6)

# Keyed by network, then by lower-cased contract address.
KNOWN_TOKENS: dict[str, dict[str, KnownToken]] = {
    "base-mainnet": {"0x833589fcd6edb6e08f4c7c32d4f71b54bda02913": _USDC},
    "base-sepolia": {"0x036cbd53842c5426634e7929541ec2318f3dcf7e": _USDC},
    "ethereum-mainnet": {"0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48": _USDC},
    "ethereum-sepolia": {"0x1c7d4b196cb0c7b01d743fbc6116a902379c7238": _USDC},
}


def get_known_token(network: str, asset: str) -> Optional[KnownToken]:
    return KNOWN_TOKENS.get(network, {}).get(asset.lower())


def is_known_token(network: str, asset: str) -> bool:
    return get_known_token(network, asset) is not None


def validate_token_domain(
    network: str, asset: str, extra: Optional[Mapping[str, Any]]
) -> None:
    """Check the declared EIP-712 domain against the registry.

    Unknown tokens only need ``name`` and ``version`` to be present; the
    facilitator validates them against the contract.
    """
    validate_domain_parameters(extra)
    token = get_known_token(network, asset)
    if token is None:
        return
    assert extra is not None
    if extra["name"] != token.name:
        raise ValidationError(
            f"Token name mismatch for {asset.lower()}: expected '{token.name}'",
            ErrorCode.INVALID_EIP712_DOMAIN,
        )
    if extra["version"] != token.version:
        raise ValidationError(
            f"Token version mismatch for {asset.lower()}: expected '{token.version}'",
            ErrorCode.INVALID_EIP712_DOMAIN,
        )
