"""Network identifiers and network-family helpers."""

from __future__ import annotations

SUPPORTED_NETWORKS: tuple[str, ...] = (
    # Ethereum
    "ethereum-mainnet",
    "ethereum-sepolia",
    "ethereum-holesky",
    # Base
    "base-mainnet",
    "base-sepolia",
    # Optimism
    "optimism-mainnet",
    "optimism-sepolia",
    # Arbitrum
    "arbitrum-mainnet",
    "arbitrum-sepolia",
    # Polygon
    "polygon-mainnet",
    "polygon-amoy",
    # Solana
    "solana-mainnet",
    "solana-devnet",
    "solana-testnet",
)

SUPPORTED_SCHEMES: tuple[str, ...] = ("exact",)

X402_VERSION = 1


def is_transaction_network(network: str) -> bool:
    """True for networks whose payments are opaque signed transactions (Solana)."""
    return network.startswith("solana-")


def is_account_network(network: str) -> bool:
    """True for networks using transfer-with-authorization (EVM chains)."""
    return not is_transaction_network(network)
