"""
ownership.py - Fail-closed ownership gate.

Absence of proof is no access: any adapter error, a missing contract
address or a malformed answer resolves to "not owned". Nothing raised by
the adapter escapes ``has_access``.
"""

import logging
from typing import TYPE_CHECKING

from gatekeeper.domain import OwnershipStatus, short_address
from gatekeeper.errors import GateError

if TYPE_CHECKING:
    from gatekeeper.wallet import BlockchainClient

logger = logging.getLogger("gate")


class OwnershipGate:
    def __init__(self, wallet: "BlockchainClient"):
        self._wallet = wallet

    async def has_access(self, address: str) -> bool:
        if not address:
            return False
        try:
            owned = await self._wallet.check_ownership(address)
        except GateError as e:
            logger.warning("Ownership check for %s failed, denying access: %s", short_address(address), e)
            return False
        except Exception:
            logger.exception("Unexpected ownership check error for %s, denying access", short_address(address))
            return False
        return owned is True

    async def check(self, address: str) -> OwnershipStatus:
        owned = await self.has_access(address)
        return OwnershipStatus(owned=owned, subject_address=address)
