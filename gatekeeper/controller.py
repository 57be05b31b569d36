"""
controller.py - Wallet-gated access state machine.

    DISCONNECTED -> CONNECTING -> CHECKING_ACCESS -> ACCESS_DENIED
                                                \\-> WRONG_NETWORK -> (retry) CHECKING_ACCESS
                                                \\-> ACCESS_GRANTED -> PROFILE_LOADING -> READY
    ACCESS_DENIED -> MINTING -> CONFIRMING -> ACCESS_GRANTED | MINT_FAILED | MINT_TIMED_OUT

DISCONNECTED and CHECKING_ACCESS are reachable from every state: a wallet
disconnect or account switch always wins over whatever flow is running.

Every trigger bumps the session epoch. Asynchronous flows capture the epoch
and the address they started with and drop their result if either has
moved on, so a slow check for an old address can never overwrite the state
of a newer one. Failures become a state plus ``status_message``; nothing
from the adapters escapes to the shell.
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Set, Tuple

from eth_utils import to_checksum_address

from gatekeeper.config import DEFAULT_POLL_INTERVAL_SEC, DEFAULT_POLL_MAX_ATTEMPTS
from gatekeeper.domain import (
    AccessMode,
    AccessState,
    LeaderboardView,
    MintAttempt,
    MintOutcome,
    OwnershipStatus,
    PlayerProfile,
    WalletAccount,
    short_address,
)
from gatekeeper.errors import (
    GateError,
    InvalidTransition,
    ProfileStoreUnavailable,
    ProviderAbsent,
    UserRejected,
    UsernameTaken,
)
from gatekeeper.minting import MintOrchestrator
from gatekeeper.ownership import OwnershipGate
from gatekeeper.profile import ProfileService

if TYPE_CHECKING:
    from gatekeeper.storage import ProfileStore
    from gatekeeper.wallet import BlockchainClient

logger = logging.getLogger("controller")

S = AccessState

LEGAL_TRANSITIONS: Dict[AccessState, Set[AccessState]] = {
    S.DISCONNECTED: {S.CONNECTING},
    S.CONNECTING: set(),
    S.CHECKING_ACCESS: {S.WRONG_NETWORK, S.ACCESS_DENIED, S.ACCESS_GRANTED},
    S.WRONG_NETWORK: set(),
    S.ACCESS_DENIED: {S.MINTING},
    S.MINTING: {S.CONFIRMING, S.MINT_FAILED},
    S.CONFIRMING: {S.ACCESS_GRANTED, S.MINT_FAILED, S.MINT_TIMED_OUT},
    S.MINT_FAILED: {S.MINTING},
    S.MINT_TIMED_OUT: {S.MINTING},
    S.ACCESS_GRANTED: {S.PROFILE_LOADING},
    S.PROFILE_LOADING: {S.READY},
    S.READY: set(),
}

# Reachable from anywhere: disconnect, account switch, manual retry
ALWAYS_ALLOWED: Set[AccessState] = {S.DISCONNECTED, S.CHECKING_ACCESS}

MINTABLE: Set[AccessState] = {S.ACCESS_DENIED, S.MINT_FAILED, S.MINT_TIMED_OUT}
RETRYABLE: Set[AccessState] = {S.WRONG_NETWORK, S.ACCESS_DENIED, S.MINT_FAILED, S.MINT_TIMED_OUT}

StateListener = Callable[[AccessState], None]


def is_legal(old: AccessState, new: AccessState) -> bool:
    return new in ALWAYS_ALLOWED or new in LEGAL_TRANSITIONS.get(old, set())


class GameShell:
    """Hand-off point to the game. The default does nothing."""

    def setup(self, best_score: int):
        pass

    def start(self):
        pass


class AccessController:
    """Sequences connect, network check, ownership, mint and profile loading."""

    def __init__(
        self,
        wallet: "BlockchainClient",
        store: "ProfileStore",
        game: Optional[GameShell] = None,
        *,
        chain_tag: Optional[str] = None,
        poll_interval_sec: float = DEFAULT_POLL_INTERVAL_SEC,
        poll_max_attempts: int = DEFAULT_POLL_MAX_ATTEMPTS,
        sleep=asyncio.sleep,
    ):
        self._wallet = wallet
        self._gate = OwnershipGate(wallet)
        self._minter = MintOrchestrator(
            wallet, self._gate,
            interval_sec=poll_interval_sec, max_attempts=poll_max_attempts, sleep=sleep,
        )
        self._profiles = ProfileService(store, chain_tag=wallet.chain.tag if chain_tag is None else chain_tag)
        self._game = game or GameShell()
        self.mode = AccessMode.DEGRADED if store.is_ephemeral else AccessMode.ONLINE

        self._state = AccessState.DISCONNECTED
        self._status = "Connect your wallet to play"
        self._account: Optional[WalletAccount] = None
        self._ownership: Optional[OwnershipStatus] = None
        self._profile: Optional[PlayerProfile] = None
        self._epoch = 0
        self._flow: Optional[asyncio.Task] = None
        self._listeners: List[StateListener] = []
        self._transition_log: List[Tuple[AccessState, AccessState]] = []

        wallet.on_account_change(self.on_account_change)
        wallet.on_chain_change(self.on_chain_change)

    # -------------------------------------------------------------------
    # Shell-facing accessors
    # -------------------------------------------------------------------

    @property
    def state(self) -> AccessState:
        return self._state

    @property
    def status_message(self) -> str:
        return self._status

    @property
    def is_unlocked(self) -> bool:
        return self._state is AccessState.READY

    @property
    def account(self) -> Optional[WalletAccount]:
        return self._account

    @property
    def ownership(self) -> Optional[OwnershipStatus]:
        return self._ownership

    @property
    def mint_attempt(self) -> Optional[MintAttempt]:
        return self._minter.attempt

    @property
    def transition_log(self) -> List[Tuple[AccessState, AccessState]]:
        return list(self._transition_log)

    def attach_game(self, game: GameShell):
        self._game = game

    def current_profile(self) -> Optional[PlayerProfile]:
        return self._profile

    def on_state_change(self, callback: StateListener):
        self._listeners.append(callback)

    def snapshot(self) -> dict:
        attempt = self._minter.attempt
        return {
            "state": self._state.value,
            "mode": self.mode.value,
            "unlocked": self.is_unlocked,
            "status": self._status,
            "address": self._account.address if self._account else None,
            "chain_id": self._account.chain_id if self._account else None,
            "target_chain_id": self._wallet.chain.chain_id,
            "owned": self._ownership.owned if self._ownership else None,
            "mint": attempt.to_dict() if attempt else None,
            "profile": self._profile.to_dict() if self._profile else None,
        }

    # -------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------

    def _transition(self, new_state: AccessState, status: str):
        old = self._state
        if not is_legal(old, new_state):
            raise InvalidTransition(f"Cannot transition from {old.value} to {new_state.value}")
        self._state = new_state
        self._status = status
        self._transition_log.append((old, new_state))
        logger.info("%s -> %s (%s) %s", old.value, new_state.value, short_address(self.address), status)
        self._notify()

    def _set_status(self, status: str):
        self._status = status
        self._notify()

    def _notify(self):
        for cb in list(self._listeners):
            try:
                cb(self._state)
            except Exception:
                logger.exception("State listener failed")

    @property
    def address(self) -> Optional[str]:
        return self._account.address if self._account else None

    def _is_current(self, epoch: int, address: str) -> bool:
        return epoch == self._epoch and self._account is not None and self._account.address == address

    # -------------------------------------------------------------------
    # Flow management
    # -------------------------------------------------------------------

    def _cancel_flow(self):
        self._minter.cancel()
        flow = self._flow
        self._flow = None
        if flow is not None and not flow.done() and flow is not asyncio.current_task():
            flow.cancel()

    def _launch(self, coro) -> asyncio.Task:
        self._cancel_flow()
        task = asyncio.create_task(coro)
        self._flow = task
        return task

    @staticmethod
    async def _await_flow(task: Optional[asyncio.Task]):
        if task is None:
            return
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            # superseded by a newer trigger
            if not task.cancelled():
                raise

    def _begin_session(self, account: WalletAccount) -> asyncio.Task:
        self._epoch += 1
        self._cancel_flow()
        self._account = account
        self._ownership = None
        self._profile = None
        self._transition(AccessState.CHECKING_ACCESS, f"Checking pass ownership for {short_address(account.address)}")
        return self._launch(self._check_access(self._epoch, account.address))

    def _reset(self, status: str):
        self._epoch += 1
        self._cancel_flow()
        self._account = None
        self._ownership = None
        self._profile = None
        if self._state is AccessState.DISCONNECTED:
            self._set_status(status)
        else:
            self._transition(AccessState.DISCONNECTED, status)

    # -------------------------------------------------------------------
    # Wallet events
    # -------------------------------------------------------------------

    def on_account_change(self, address: Optional[str]):
        if address is None:
            if self._account is not None or self._state is not AccessState.DISCONNECTED:
                logger.info("Wallet disconnected, clearing session for %s", short_address(self.address))
            self._reset("Wallet disconnected")
            return
        try:
            address = to_checksum_address(address)
        except (TypeError, ValueError):
            logger.warning("Ignoring malformed account change: %r", address)
            return
        if (
            self._account is not None
            and self._account.address == address
            and self._state not in (AccessState.DISCONNECTED, AccessState.CONNECTING)
        ):
            return
        chain_id = self._wallet.chain_id or (self._account.chain_id if self._account else 0)
        self._begin_session(WalletAccount(address=address, chain_id=chain_id))

    def on_chain_change(self, chain_id: int):
        if self._account is None:
            return
        if self._state in (AccessState.DISCONNECTED, AccessState.CONNECTING, AccessState.CHECKING_ACCESS):
            return
        on_target = chain_id == self._wallet.chain.chain_id
        if on_target and self._state is not AccessState.WRONG_NETWORK:
            return
        logger.info("Chain changed to %d while %s, re-checking access", chain_id, self._state.value)
        self._begin_session(WalletAccount(address=self._account.address, chain_id=chain_id))

    # -------------------------------------------------------------------
    # User actions
    # -------------------------------------------------------------------

    async def start(self) -> AccessState:
        """Silent reconnect on load. Stays DISCONNECTED if nothing is authorised."""
        account = await self._wallet.init()
        if account is None or self._account is not None:
            return self._state
        await self._await_flow(self._begin_session(account))
        return self._state

    async def connect(self) -> AccessState:
        if self._state is not AccessState.DISCONNECTED:
            return self._state
        epoch = self._epoch
        self._transition(AccessState.CONNECTING, "Waiting for wallet approval")
        try:
            account = await self._wallet.connect()
        except UserRejected:
            if epoch == self._epoch:
                self._transition(AccessState.DISCONNECTED, "Connection rejected in wallet. Try again.")
            return self._state
        except ProviderAbsent:
            if epoch == self._epoch:
                self._transition(
                    AccessState.DISCONNECTED,
                    "No wallet found. Install a browser wallet such as Coinbase Wallet or MetaMask to play.",
                )
            return self._state
        except GateError as e:
            if epoch == self._epoch:
                self._transition(AccessState.DISCONNECTED, f"Wallet connection failed: {e}")
            return self._state
        if epoch != self._epoch:
            # an account event already started the session
            return self._state
        await self._await_flow(self._begin_session(account))
        return self._state

    async def disconnect(self) -> AccessState:
        await self._wallet.disconnect()
        if self._state is not AccessState.DISCONNECTED:
            self._reset("Wallet disconnected")
        return self._state

    def reset(self):
        """Explicit session reset: drop every derived value and stop polling."""
        self._reset("Session reset")

    def begin_refresh(self) -> Optional[asyncio.Task]:
        if self._account is None or self._state not in RETRYABLE:
            logger.info("Refresh ignored in state %s", self._state.value)
            return None
        account = self._wallet.current_account() or self._account
        return self._begin_session(account)

    async def refresh(self) -> AccessState:
        """Manual retry after a wrong network, a denial or an unconfirmed mint."""
        await self._await_flow(self.begin_refresh())
        return self._state

    def begin_mint(self) -> Optional[asyncio.Task]:
        if self._account is None or self._state not in MINTABLE:
            logger.info("Mint ignored in state %s", self._state.value)
            return None
        return self._launch(self._mint_flow(self._epoch, self._account.address))

    async def mint(self) -> AccessState:
        await self._await_flow(self.begin_mint())
        return self._state

    def start_game(self) -> bool:
        """Honoured only while READY."""
        if self._state is not AccessState.READY:
            logger.info("Game start ignored in state %s", self._state.value)
            return False
        try:
            self._game.start()
        except Exception:
            logger.exception("Game shell failed to start")
            return False
        return True

    async def submit_score(self, score: int) -> bool:
        """Record a finished game's score. Returns True if it is a new best."""
        if isinstance(score, bool) or not isinstance(score, int) or score < 0:
            raise ValueError("score must be a non-negative integer")
        profile = self._profile
        if self._state is not AccessState.READY or profile is None:
            return False
        return await self._profiles.record_score(profile, score)

    async def set_username(self, username: str) -> bool:
        """Claim a display name. On failure ``status_message`` says why."""
        profile = self._profile
        if self._state is not AccessState.READY or profile is None:
            return False
        epoch, address = self._epoch, self._account.address
        try:
            updated = await self._profiles.rename(profile, username)
        except ValueError as e:
            self._set_status(str(e))
            return False
        except UsernameTaken:
            self._set_status(f"The name '{username.strip()}' is taken. Pick another one.")
            return False
        except (ProfileStoreUnavailable, KeyError):
            self._set_status("Could not save your name right now. Try again later.")
            return False
        if self._is_current(epoch, address):
            self._profile = updated
            self._set_status(f"Playing as {updated.display_name}")
        return True

    async def leaderboard(self, n: int = 10) -> LeaderboardView:
        return await self._profiles.leaderboard(n)

    async def wait_settled(self):
        """Wait until no flow is running. A flow replaced while waiting is followed."""
        while self._flow is not None and not self._flow.done():
            await self._await_flow(self._flow)

    async def close(self):
        self._epoch += 1
        flow = self._flow
        self._cancel_flow()
        if flow is not None and not flow.done():
            try:
                await flow
            except asyncio.CancelledError:
                pass

    # -------------------------------------------------------------------
    # Flows
    # -------------------------------------------------------------------

    async def _check_access(self, epoch: int, address: str):
        try:
            await self._wallet.ensure_network()
        except GateError as e:
            if self._is_current(epoch, address):
                self._transition(AccessState.WRONG_NETWORK, str(e))
            return

        status = await self._gate.check(address)
        if not self._is_current(epoch, address):
            logger.debug("Discarding stale ownership result for %s", short_address(address))
            return
        self._ownership = status
        if status.owned:
            self._transition(AccessState.ACCESS_GRANTED, "Pass verified")
            await self._load_profile(epoch, address)
        else:
            self._transition(AccessState.ACCESS_DENIED, "No pass found for this wallet. Mint one to play.")

    async def _mint_flow(self, epoch: int, address: str):
        self._transition(AccessState.MINTING, "Confirm the mint in your wallet")

        def _submitted(attempt: MintAttempt):
            if self._is_current(epoch, address):
                self._transition(
                    AccessState.CONFIRMING,
                    f"Mint submitted ({attempt.transaction_hash[:10]}..). Waiting for confirmation",
                )

        try:
            result = await self._minter.submit_and_confirm(address, on_submitted=_submitted)
        except UserRejected:
            if self._is_current(epoch, address):
                self._transition(AccessState.MINT_FAILED, "Mint cancelled in wallet. Try again when ready.")
            return
        except GateError as e:
            if self._is_current(epoch, address):
                self._transition(AccessState.MINT_FAILED, f"{e}. Try again.")
            return

        if not self._is_current(epoch, address):
            return
        if result.outcome is MintOutcome.CONFIRMED:
            self._ownership = OwnershipStatus(owned=True, subject_address=address)
            self._transition(AccessState.ACCESS_GRANTED, "Pass minted")
            await self._load_profile(epoch, address)
        elif result.outcome is MintOutcome.TIMED_OUT:
            tx_hash = result.attempt.transaction_hash
            self._minter.cancel()
            self._transition(
                AccessState.MINT_TIMED_OUT,
                f"Mint {tx_hash[:10]}.. is not confirmed yet. Refresh to check again.",
            )

    async def _load_profile(self, epoch: int, address: str):
        self._transition(AccessState.PROFILE_LOADING, "Loading profile")
        profile = await self._profiles.resolve(address)
        if not self._is_current(epoch, address):
            return
        self._profile = profile
        if profile.is_ephemeral:
            status = "Ready to play (offline: progress is kept for this session only)"
        else:
            status = f"Ready to play as {profile.display_name}"
        self._transition(AccessState.READY, status)
        try:
            self._game.setup(profile.best_score)
        except Exception:
            logger.exception("Game shell setup failed")
