"""Static blocklist compliance checker."""

from __future__ import annotations

from typing import Iterable

from ..domain.shared.collaborators import ComplianceResult


class StaticBlocklistComplianceChecker:
    """Blocks addresses found in a fixed list.

    Account-based addresses are compared case-insensitively; base58
    addresses are compared exactly.
    """

    def __init__(
        self,
        blocked_addresses: Iterable[str] = (),
        reason: str = "Address is blocklisted",
    ):
        self._blocked = {self._normalize(address) for address in blocked_addresses}
        self._reason = reason

    @staticmethod
    def _normalize(address: str) -> str:
        return address.lower() if address.startswith("0x") else address

    def block(self, address: str) -> None:
        self._blocked.add(self._normalize(address))

    def unblock(self, address: str) -> None:
        self._blocked.discard(self._normalize(address))

    async def check_address(self, address: str, network: str) -> ComplianceResult:
        if self._normalize(address) in self._blocked:
            return ComplianceResult(
                blocked=True,
                reason=self._reason,
                metadata={"network": network},
            )
        return ComplianceResult(blocked=False)

    async def is_compliant(self, address: str, network: str) -> bool:
        result = await self.check_address(address, network)
        return not result.blocked
