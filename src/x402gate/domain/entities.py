"""Protocol value objects: requirements, payloads and facilitator results."""

from __future__ import annotations

from typing import Any, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from .networks import X402_VERSION, is_transaction_network


class _WireModel(BaseModel):
    """Base for models exchanged on the wire with camelCase field names."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class PaymentRequirements(_WireModel):
    """What a resource server demands for one protected resource."""

    scheme: str
    network: str
    max_amount_required: str = Field(alias="maxAmountRequired")
    resource: str
    description: str
    mime_type: str = Field(alias="mimeType")
    pay_to: str = Field(alias="payTo")
    max_timeout_seconds: int = Field(alias="maxTimeoutSeconds")
    asset: str
    output_schema: Optional[dict[str, Any]] = Field(None, alias="outputSchema")
    extra: Optional[dict[str, Any]] = None


class AccountAuthorization(_WireModel):
    """Transfer-with-authorization fields signed by the payer (EIP-3009)."""

    from_: str = Field(alias="from")
    to: str
    value: str
    valid_after: str = Field(alias="validAfter")
    valid_before: str = Field(alias="validBefore")
    nonce: str


class ExactAccountPayload(_WireModel):
    """`exact` payload for account-based networks."""

    signature: str
    authorization: AccountAuthorization


class ExactTransactionPayload(_WireModel):
    """`exact` payload for transaction-based networks."""

    transaction: str


SchemePayload = Union[ExactAccountPayload, ExactTransactionPayload]


class PaymentPayload(_WireModel):
    """Client-submitted payment, decoded from the X-Payment header."""

    x402_version: int = Field(X402_VERSION, alias="x402Version")
    scheme: str
    network: str
    payload: SchemePayload

    @model_validator(mode="after")
    def _check_variant(self) -> "PaymentPayload":
        # The variant must follow the network family, not just the payload shape.
        expected = (
            ExactTransactionPayload
            if is_transaction_network(self.network)
            else ExactAccountPayload
        )
        if not isinstance(self.payload, expected):
            raise ValueError(f"payload does not match the {self.network} network family")
        return self

    @property
    def authorization(self) -> Optional[AccountAuthorization]:
        if isinstance(self.payload, ExactAccountPayload):
            return self.payload.authorization
        return None


class VerifyResult(_WireModel):
    """Facilitator answer to /verify."""

    is_valid: bool = Field(alias="isValid")
    invalid_reason: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("invalidReason", "invalid_reason"),
        serialization_alias="invalidReason",
    )
    payer: Optional[str] = None
    details: Optional[dict[str, Any]] = None


class SettleResult(_WireModel):
    """Facilitator answer to /settle."""

    success: bool = False
    error_reason: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("errorReason", "error_reason", "error"),
        serialization_alias="errorReason",
    )
    transaction: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("transaction", "txHash", "tx_hash"),
        serialization_alias="transaction",
    )
    network: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("network", "networkId", "network_id"),
        serialization_alias="network",
    )
    payer: Optional[str] = None
    status: Optional[str] = None


class NetworkInfo(_WireModel):
    id: str
    name: str = ""
    chain_id: int = Field(
        0,
        validation_alias=AliasChoices("chainId", "chain_id"),
        serialization_alias="chainId",
    )
    type: str = "evm"
    rpc_url: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("rpcUrl", "rpc_url"),
        serialization_alias="rpcUrl",
    )
    explorer_url: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("explorerUrl", "explorer_url"),
        serialization_alias="explorerUrl",
    )


class SupportedConfiguration(_WireModel):
    """Facilitator answer to /supported."""

    version: str = "1.0.0"
    networks: list[NetworkInfo] = Field(default_factory=list)
    schemes: list[str] = Field(default_factory=lambda: ["exact"])
    features: dict[str, bool] = Field(default_factory=dict)

    @field_validator("networks", mode="before")
    @classmethod
    def _networks_from_ids(cls, value: Any) -> Any:
        # Some facilitators list bare network ids.
        if isinstance(value, list):
            return [
                {"id": item, "name": item} if isinstance(item, str) else item
                for item in value
            ]
        return value

    def supports_network(self, network_id: str) -> bool:
        return self.get_network(network_id) is not None

    def get_network(self, network_id: str) -> Optional[NetworkInfo]:
        for network in self.networks:
            if network.id == network_id:
                return network
        return None

    def supports_scheme(self, scheme: str) -> bool:
        return scheme in self.schemes

    def supports_feature(self, feature: str) -> bool:
        return bool(self.features.get(feature, False))


class PaymentRequiredResponse(_WireModel):
    """Body and headers of a 402 Payment Required response."""

    x402_version: int = Field(X402_VERSION, alias="x402Version")
    accepts: list[PaymentRequirements]
    error: str = ""

    def headers(self) -> dict[str, str]:
        schemes: list[str] = []
        for requirement in self.accepts:
            if requirement.scheme not in schemes:
                schemes.append(requirement.scheme)
        return {
            "WWW-Authenticate": "X-Payment",
            "Content-Type": "application/json",
            "X-Payment-Accept": ", ".join(schemes),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "x402Version": self.x402_version,
            "accepts": [requirement.to_dict() for requirement in self.accepts],
            "error": self.error,
        }
