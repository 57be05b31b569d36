"""
wallet.py - Blockchain client adapter.

Wraps an EIP-1193 style wallet provider (``request`` / ``on`` /
``remove_listener``) and exposes the handful of operations the access
controller needs: silent and explicit connection, network validation,
the pass contract's balance read and mint write, and account/chain change
notifications.

Provider errors are translated into the taxonomy in ``gatekeeper.errors``:
    4001 -> UserRejected, 4902 -> unknown chain (add, then retry switch once)
    other provider errors -> NetworkFailure (connect, balance read)
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from eth_utils import is_address, to_checksum_address

from gatekeeper.config import ChainSpec
from gatekeeper.domain import WalletAccount, short_address
from gatekeeper.errors import (
    ContractUnavailable,
    NetworkFailure,
    NotConnected,
    ProviderAbsent,
    TransactionFailed,
    UserRejected,
    WrongNetwork,
)

logger = logging.getLogger("wallet")

# EIP-1193 / EIP-3085 error codes
USER_REJECTED = 4001
UNAUTHORIZED = 4100
UNSUPPORTED_METHOD = 4200
DISCONNECTED = 4900
CHAIN_DISCONNECTED = 4901
UNRECOGNIZED_CHAIN = 4902
INTERNAL_ERROR = -32603

# ERC-721 balanceOf(address) and the pass contract's mint()
BALANCE_OF_SELECTOR = "0x70a08231"
MINT_SELECTOR = "0x1249c58b"

AccountListener = Callable[[Optional[str]], None]
ChainListener = Callable[[int], None]


class ProviderRpcError(Exception):
    """Error returned by a wallet provider, carrying its EIP-1193 code."""

    def __init__(self, code: int, message: str = "", data: Any = None):
        super().__init__(f"[{code}] {message}")
        self.code = code
        self.message = message
        self.data = data


class WalletProvider(ABC):
    """EIP-1193 provider: what ``window.ethereum`` is in a browser."""

    def __init__(self):
        self._handlers: Dict[str, List[Callable]] = {}

    @abstractmethod
    async def request(self, method: str, params: Optional[list] = None) -> Any:
        """Send a JSON-RPC request through the wallet."""

    def on(self, event: str, callback: Callable) -> None:
        self._handlers.setdefault(event, []).append(callback)

    def remove_listener(self, event: str, callback: Callable) -> None:
        try:
            self._handlers.get(event, []).remove(callback)
        except ValueError:
            pass

    def emit(self, event: str, payload: Any = None) -> None:
        for cb in list(self._handlers.get(event, [])):
            try:
                cb(payload)
            except Exception:
                logger.exception("Provider listener for %s failed", event)


def encode_balance_of(address: str) -> str:
    return BALANCE_OF_SELECTOR + address.lower().replace("0x", "").rjust(64, "0")


def decode_uint(result: Any) -> int:
    if not isinstance(result, str) or not result.startswith("0x"):
        raise ValueError(f"malformed uint256 result: {result!r}")
    body = result[2:]
    if not body:
        raise ValueError("empty uint256 result")
    return int(body, 16)


def parse_chain_id(value: Any) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    raise ValueError(f"malformed chain id: {value!r}")


class BlockchainClient:
    """Adapter between the access controller and one wallet provider."""

    def __init__(
        self,
        provider: Optional[WalletProvider],
        chain: ChainSpec,
        contract_address: str = "",
    ):
        self._provider = provider
        self._chain = chain
        self._contract = contract_address.strip()
        self._account: Optional[WalletAccount] = None
        self._account_listeners: List[AccountListener] = []
        self._chain_listeners: List[ChainListener] = []
        self._subscribed = False
        if not self._contract:
            logger.error("Pass contract address not set; ownership checks will deny access")

    # -------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------

    def on_account_change(self, callback: AccountListener):
        self._account_listeners.append(callback)

    def on_chain_change(self, callback: ChainListener):
        self._chain_listeners.append(callback)

    def _notify_account(self, address: Optional[str]):
        for cb in list(self._account_listeners):
            cb(address)

    def _notify_chain(self, chain_id: int):
        for cb in list(self._chain_listeners):
            cb(chain_id)

    def _subscribe(self):
        if self._subscribed or self._provider is None:
            return
        self._provider.on("accountsChanged", self._handle_accounts_changed)
        self._provider.on("chainChanged", self._handle_chain_changed)
        self._provider.on("disconnect", self._handle_disconnect)
        self._subscribed = True

    def _handle_accounts_changed(self, accounts: Any):
        if not accounts:
            if self._account is not None:
                logger.info("Wallet disconnected (%s)", short_address(self._account.address))
            self._account = None
            self._notify_account(None)
            return
        try:
            address = to_checksum_address(accounts[0])
        except (TypeError, ValueError):
            logger.warning("Ignoring malformed account from provider: %r", accounts[0])
            return
        chain_id = self._account.chain_id if self._account else 0
        self._account = WalletAccount(address=address, chain_id=chain_id)
        logger.info("Account changed: %s", short_address(address))
        self._notify_account(address)

    def _handle_chain_changed(self, chain_value: Any):
        try:
            chain_id = parse_chain_id(chain_value)
        except ValueError:
            logger.warning("Ignoring malformed chain id from provider: %r", chain_value)
            return
        if self._account is not None:
            self._account = WalletAccount(address=self._account.address, chain_id=chain_id)
        logger.info("Chain changed: %d", chain_id)
        self._notify_chain(chain_id)

    def _handle_disconnect(self, _error: Any = None):
        self._handle_accounts_changed([])

    # -------------------------------------------------------------------
    # Connection
    # -------------------------------------------------------------------

    async def init(self) -> Optional[WalletAccount]:
        """Silently restore an already-authorised account. Never prompts."""
        if self._provider is None:
            logger.info("No injected wallet found, skipping auto-connect")
            return None
        self._subscribe()
        try:
            accounts = await self._provider.request("eth_accounts")
            if not accounts:
                logger.info("Auto-connect skipped: no authorised accounts")
                return None
            address = to_checksum_address(accounts[0])
            chain_id = await self._read_chain_id()
        except Exception as e:
            logger.info("Auto-connect skipped or failed: %s", e)
            return None
        self._account = WalletAccount(address=address, chain_id=chain_id)
        logger.info("Auto-connected: %s (chain %d)", short_address(address), chain_id)
        return self._account

    async def connect(self) -> WalletAccount:
        """User-initiated connection; may prompt."""
        if self._provider is None:
            raise ProviderAbsent("No compatible wallet found. Install a wallet extension to continue.")
        self._subscribe()
        try:
            accounts = await self._provider.request("eth_requestAccounts")
        except ProviderRpcError as e:
            if e.code in (USER_REJECTED, UNAUTHORIZED):
                raise UserRejected("Connection request was rejected") from e
            logger.warning("eth_requestAccounts failed with code %s: %s", e.code, e.message)
            raise NetworkFailure(e.message or f"provider error {e.code}") from e
        except Exception as e:
            logger.warning("eth_requestAccounts failed: %s", e)
            raise NetworkFailure(str(e) or type(e).__name__) from e
        if not accounts:
            raise UserRejected("Wallet returned no accounts")
        try:
            address = to_checksum_address(accounts[0])
        except (TypeError, ValueError) as e:
            raise NetworkFailure(f"wallet returned a malformed account: {accounts[0]!r}") from e
        try:
            chain_id = await self._read_chain_id()
        except (ProviderRpcError, ValueError):
            chain_id = 0
        self._account = WalletAccount(address=address, chain_id=chain_id)
        logger.info("Connected: %s (chain %d)", short_address(address), chain_id)
        return self._account

    async def disconnect(self):
        """Forget the current account and tell subscribers."""
        if self._account is None:
            return
        self._handle_accounts_changed([])

    async def _read_chain_id(self) -> int:
        return parse_chain_id(await self._provider.request("eth_chainId"))

    # -------------------------------------------------------------------
    # Network
    # -------------------------------------------------------------------

    async def ensure_network(self):
        """Make sure the wallet is on the target chain, switching if needed."""
        if self._provider is None:
            raise ProviderAbsent("No compatible wallet found")
        target = self._chain
        try:
            current = await self._read_chain_id()
        except (ProviderRpcError, ValueError) as e:
            raise WrongNetwork(f"Could not read the active network: {e}") from e
        if current == target.chain_id:
            self._set_chain(current)
            return

        logger.info("Wallet on chain %d, requesting switch to %s (%d)", current, target.name, target.chain_id)
        try:
            await self._switch_chain()
        except ProviderRpcError as e:
            if e.code != UNRECOGNIZED_CHAIN:
                raise WrongNetwork(self._wrong_network_message(e)) from e
            logger.info("Chain %d unknown to wallet, registering it", target.chain_id)
            try:
                await self._provider.request("wallet_addEthereumChain", [target.add_chain_params()])
                await self._switch_chain()
            except ProviderRpcError as e2:
                raise WrongNetwork(self._wrong_network_message(e2)) from e2
        self._set_chain(target.chain_id)

    async def _switch_chain(self):
        await self._provider.request("wallet_switchEthereumChain", [{"chainId": self._chain.hex_id}])

    def _wrong_network_message(self, err: ProviderRpcError) -> str:
        if err.code == USER_REJECTED:
            return f"Please switch your wallet to {self._chain.name} to continue"
        return f"Could not switch to {self._chain.name}: {err.message}"

    def _set_chain(self, chain_id: int):
        if self._account is not None and self._account.chain_id != chain_id:
            self._account = WalletAccount(address=self._account.address, chain_id=chain_id)

    # -------------------------------------------------------------------
    # Contract calls
    # -------------------------------------------------------------------

    async def check_ownership(self, address: str) -> bool:
        """Read ``balanceOf(address)`` on the pass contract."""
        if not self._contract:
            raise ContractUnavailable("Pass contract address not configured")
        if self._provider is None:
            raise ContractUnavailable("No wallet provider available")
        if not is_address(address):
            raise ContractUnavailable(f"Not an address: {address!r}")
        try:
            result = await self._provider.request(
                "eth_call",
                [{"to": self._contract, "data": encode_balance_of(address)}, "latest"],
            )
        except ProviderRpcError as e:
            raise NetworkFailure(f"balanceOf call failed: {e}") from e
        except Exception as e:
            raise ContractUnavailable(f"balanceOf failed: {e}") from e
        try:
            balance = decode_uint(result)
        except ValueError as e:
            raise ContractUnavailable(f"balanceOf returned {e}") from e
        return balance > 0

    async def mint(self, address: str) -> str:
        """Submit a mint from ``address``; returns the transaction hash."""
        if self._account is None:
            raise NotConnected("Connect a wallet before minting")
        if not self._contract:
            raise TransactionFailed("Pass contract address not configured")
        tx = {"from": address, "to": self._contract, "data": MINT_SELECTOR}
        try:
            tx_hash = await self._provider.request("eth_sendTransaction", [tx])
        except ProviderRpcError as e:
            if e.code == USER_REJECTED:
                raise UserRejected("Mint transaction was rejected") from e
            raise TransactionFailed(f"Mint failed: {e.message}") from e
        except Exception as e:
            raise TransactionFailed(f"Mint failed: {e}") from e
        if not isinstance(tx_hash, str) or not tx_hash.startswith("0x"):
            raise TransactionFailed(f"Wallet returned no transaction hash: {tx_hash!r}")
        logger.info("Mint submitted by %s: %s", short_address(address), tx_hash)
        return tx_hash

    # -------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------

    @property
    def chain(self) -> ChainSpec:
        return self._chain

    @property
    def contract_address(self) -> str:
        return self._contract

    @property
    def chain_id(self) -> Optional[int]:
        return self._account.chain_id if self._account else None

    @property
    def has_provider(self) -> bool:
        return self._provider is not None

    def get_account(self) -> Optional[str]:
        return self._account.address if self._account else None

    def current_account(self) -> Optional[WalletAccount]:
        return self._account

    def is_connected(self) -> bool:
        return self._account is not None
