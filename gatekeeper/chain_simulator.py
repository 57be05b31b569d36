"""
chain_simulator.py - In-process pass contract and injected-wallet simulator.

Simulates what the browser wallet and the pass contract do, for fully
offline runs and tests:
 - ChainSimulator: ERC-721 style ledger with balanceOf(address) and mint();
   mints stay pending until a confirmation delay has passed or mine() is
   called, like a real block-inclusion/indexing lag.
 - SimulatedWalletProvider: EIP-1193 provider (eth_accounts,
   eth_requestAccounts, eth_chainId, wallet_switchEthereumChain,
   wallet_addEthereumChain, eth_call, eth_sendTransaction) with scriptable
   rejections, wrong chain, unknown chain, account switching and disconnects.

Debug routes (when embedded in the gate server):
 - GET  /chain/stats               -> ledger counters
 - GET  /chain/balance/{address}   -> confirmed pass balance
 - POST /chain/mine                -> confirm every pending mint now

Usage:
    from gatekeeper.chain_simulator import ChainSimulator, SimulatedWalletProvider
    chain = ChainSimulator(contract_address="0x" + "c0" * 20)
    wallet = SimulatedWalletProvider(chain, accounts=["0x..."], chain_id=8453)
"""

import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from gatekeeper.domain import short_address
from gatekeeper.wallet import (
    BALANCE_OF_SELECTOR,
    INTERNAL_ERROR,
    MINT_SELECTOR,
    UNRECOGNIZED_CHAIN,
    UNSUPPORTED_METHOD,
    USER_REJECTED,
    ProviderRpcError,
    WalletProvider,
    parse_chain_id,
)

logger = logging.getLogger("chain")

DEFAULT_CONTRACT_ADDRESS = "0x" + "c0ffee00" * 5
DEFAULT_CONFIRMATION_DELAY = 4.0  # seconds
REVERT_ERROR = -32000


@dataclass
class PendingMint:
    tx_hash: str
    to: str
    token_id: int
    ready_at: float
    submitted_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "tx_hash": self.tx_hash,
            "to": self.to,
            "token_id": self.token_id,
            "ready_at": self.ready_at,
            "submitted_at": self.submitted_at,
        }


class ChainSimulator:
    """Mock pass contract: balances keyed by lower-cased owner address."""

    def __init__(
        self,
        contract_address: str = DEFAULT_CONTRACT_ADDRESS,
        confirmation_delay: float = DEFAULT_CONFIRMATION_DELAY,
        max_supply: int = 0,
    ):
        self.contract_address = contract_address.lower()
        self._confirmation_delay = confirmation_delay
        self._max_supply = max_supply  # 0 = unlimited
        self._balances: Dict[str, int] = {}
        self._pending: List[PendingMint] = []
        self._minted = 0
        self._next_token_id = 1
        self._fail_reads = False
        logger.info(
            "Chain simulator initialized (contract=%s, confirmation_delay=%.1fs)",
            short_address(self.contract_address), confirmation_delay,
        )

    # -------------------------------------------------------------------
    # Contract operations
    # -------------------------------------------------------------------

    def balance_of(self, owner: str) -> int:
        if self._fail_reads:
            raise ProviderRpcError(INTERNAL_ERROR, "execution reverted: node unavailable")
        self._settle()
        return self._balances.get(owner.lower(), 0)

    def submit_mint(self, to: str) -> str:
        if self._max_supply and self._next_token_id > self._max_supply:
            raise ProviderRpcError(REVERT_ERROR, "execution reverted: max supply reached")
        tx_hash = "0x" + secrets.token_hex(32)
        pending = PendingMint(
            tx_hash=tx_hash,
            to=to.lower(),
            token_id=self._next_token_id,
            ready_at=time.time() + self._confirmation_delay,
        )
        self._next_token_id += 1
        self._pending.append(pending)
        logger.info("Mint pending: token #%d to %s tx=%s..", pending.token_id, short_address(to), tx_hash[:10])
        return tx_hash

    def mine(self) -> int:
        """Confirm every pending mint immediately. Returns how many landed."""
        count = len(self._pending)
        for p in self._pending:
            self._land(p)
        self._pending = []
        return count

    def grant(self, owner: str, count: int = 1):
        """Give ``owner`` passes directly (test setup)."""
        key = owner.lower()
        self._balances[key] = self._balances.get(key, 0) + count

    def set_read_failure(self, failing: bool):
        """Make every balance read fail, as an unreachable node would."""
        self._fail_reads = failing

    def get_stats(self) -> dict:
        return {
            "contract": self.contract_address,
            "holders": sum(1 for v in self._balances.values() if v > 0),
            "minted": self._minted,
            "pending": len(self._pending),
            "next_token_id": self._next_token_id,
        }

    @property
    def pending(self) -> List[dict]:
        return [p.to_dict() for p in self._pending]

    # -------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------

    def _settle(self):
        now = time.time()
        still_pending = []
        for p in self._pending:
            if p.ready_at <= now:
                self._land(p)
            else:
                still_pending.append(p)
        self._pending = still_pending

    def _land(self, p: PendingMint):
        self._balances[p.to] = self._balances.get(p.to, 0) + 1
        self._minted += 1
        logger.info("Mint confirmed: token #%d to %s", p.token_id, short_address(p.to))

    # -------------------------------------------------------------------
    # FastAPI route registration
    # -------------------------------------------------------------------

    def register_routes(self, app):
        """Register debug endpoints on an existing FastAPI app."""

        @app.get("/chain/stats")
        async def chain_stats():
            return self.get_stats()

        @app.get("/chain/balance/{address}")
        async def chain_balance(address: str):
            return {"address": address, "balance": self.balance_of(address)}

        @app.post("/chain/mine")
        async def chain_mine():
            return {"confirmed": self.mine()}


class SimulatedWalletProvider(WalletProvider):
    """EIP-1193 provider backed by a ChainSimulator."""

    def __init__(
        self,
        chain: ChainSimulator,
        accounts: Optional[List[str]] = None,
        chain_id: int = 8453,
        authorized: bool = False,
        known_chains: Optional[Set[int]] = None,
    ):
        super().__init__()
        self.chain = chain
        self._accounts = list(accounts or ["0x" + secrets.token_hex(20)])
        self._chain_id = chain_id
        self._authorized = authorized
        self._known_chains: Set[int] = set(known_chains) if known_chains is not None else {chain_id}
        self._known_chains.add(chain_id)
        self.reject_connect = False
        self.reject_switch = False
        self.reject_add_chain = False
        self.reject_transactions = False
        self.requests: List[str] = []

    # -------------------------------------------------------------------
    # EIP-1193
    # -------------------------------------------------------------------

    async def request(self, method: str, params: Optional[list] = None) -> Any:
        self.requests.append(method)
        params = params or []

        if method == "eth_accounts":
            return list(self._accounts[:1]) if self._authorized else []

        if method == "eth_requestAccounts":
            if self.reject_connect:
                raise ProviderRpcError(USER_REJECTED, "User rejected the request.")
            self._authorized = True
            return list(self._accounts[:1])

        if method == "eth_chainId":
            return hex(self._chain_id)

        if method == "wallet_switchEthereumChain":
            target = parse_chain_id(params[0]["chainId"])
            if self.reject_switch:
                raise ProviderRpcError(USER_REJECTED, "User rejected the request.")
            if target not in self._known_chains:
                raise ProviderRpcError(UNRECOGNIZED_CHAIN, f"Unrecognized chain ID {hex(target)}.")
            self._set_chain(target)
            return None

        if method == "wallet_addEthereumChain":
            if self.reject_add_chain:
                raise ProviderRpcError(USER_REJECTED, "User rejected the request.")
            self._known_chains.add(parse_chain_id(params[0]["chainId"]))
            return None

        if method == "eth_call":
            return self._eth_call(params[0])

        if method == "eth_sendTransaction":
            if not self._authorized:
                raise ProviderRpcError(4100, "Account not authorized.")
            if self.reject_transactions:
                raise ProviderRpcError(USER_REJECTED, "User denied transaction signature.")
            return self._send_transaction(params[0])

        raise ProviderRpcError(UNSUPPORTED_METHOD, f"Method {method} not supported")

    def _eth_call(self, call: dict) -> str:
        if call.get("to", "").lower() != self.chain.contract_address:
            return "0x"
        data = call.get("data", "")
        if not data.startswith(BALANCE_OF_SELECTOR):
            raise ProviderRpcError(REVERT_ERROR, "execution reverted")
        owner = "0x" + data[len(BALANCE_OF_SELECTOR):][-40:]
        return "0x" + format(self.chain.balance_of(owner), "064x")

    def _send_transaction(self, tx: dict) -> str:
        if tx.get("to", "").lower() != self.chain.contract_address:
            raise ProviderRpcError(REVERT_ERROR, "execution reverted: unknown contract")
        if tx.get("data") != MINT_SELECTOR:
            raise ProviderRpcError(REVERT_ERROR, "execution reverted: unknown function")
        return self.chain.submit_mint(tx.get("from") or self._accounts[0])

    # -------------------------------------------------------------------
    # User actions in the wallet UI
    # -------------------------------------------------------------------

    def switch_account(self, address: str):
        if address in self._accounts:
            self._accounts.remove(address)
        self._accounts.insert(0, address)
        if self._authorized:
            self.emit("accountsChanged", [address])

    def user_switch_chain(self, chain_id: int):
        self._known_chains.add(chain_id)
        self._set_chain(chain_id)

    def disconnect(self):
        self._authorized = False
        self.emit("accountsChanged", [])

    def _set_chain(self, chain_id: int):
        if chain_id != self._chain_id:
            self._chain_id = chain_id
            self.emit("chainChanged", hex(chain_id))
