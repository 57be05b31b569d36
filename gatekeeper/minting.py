"""
minting.py - Mint submission and bounded confirmation polling.

Ownership only shows up after block inclusion and indexing, which takes an
unpredictable amount of time. After a mint is submitted the ownership gate
is re-checked every ``interval_sec`` up to ``max_attempts`` times:

    submit -> [sleep, check] x N -> CONFIRMED | TIMED_OUT | CANCELLED

Only ownership-check ticks count toward the ceiling. At most one poller is
live per orchestrator; starting a new mint cancels the previous one.
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Awaitable, Callable, Optional

from gatekeeper.config import DEFAULT_POLL_INTERVAL_SEC, DEFAULT_POLL_MAX_ATTEMPTS
from gatekeeper.domain import MintAttempt, MintOutcome, MintResult, short_address
from gatekeeper.errors import NotConnected

if TYPE_CHECKING:
    from gatekeeper.ownership import OwnershipGate
    from gatekeeper.wallet import BlockchainClient

logger = logging.getLogger("mint")

Check = Callable[[], Awaitable[bool]]
Sleep = Callable[[float], Awaitable[None]]


class ConfirmationPoller:
    """Cancellable task that re-runs ``check`` until it passes or the ceiling is hit."""

    def __init__(
        self,
        check: Check,
        interval_sec: float = DEFAULT_POLL_INTERVAL_SEC,
        max_attempts: int = DEFAULT_POLL_MAX_ATTEMPTS,
        sleep: Sleep = asyncio.sleep,
        on_tick: Optional[Callable[[int], None]] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.check = check
        self.interval_sec = interval_sec
        self.max_attempts = max_attempts
        self.attempts = 0
        self._sleep = sleep
        self._on_tick = on_tick
        self._task: Optional[asyncio.Task] = None

    def start(self) -> asyncio.Task:
        if self._task is None:
            self._task = asyncio.create_task(self._run())
        return self._task

    async def wait(self) -> MintOutcome:
        task = self.start()
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                return MintOutcome.CANCELLED
            # the waiter was cancelled, not the poller: stop polling too
            task.cancel()
            raise

    def cancel(self):
        if self._task is not None and not self._task.done():
            self._task.cancel()

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self) -> MintOutcome:
        for attempt in range(1, self.max_attempts + 1):
            await self._sleep(self.interval_sec)
            self.attempts = attempt
            if self._on_tick is not None:
                self._on_tick(attempt)
            if await self.check():
                return MintOutcome.CONFIRMED
        return MintOutcome.TIMED_OUT


class MintOrchestrator:
    """Submits a mint through the wallet, then waits for the gate to see it."""

    def __init__(
        self,
        wallet: "BlockchainClient",
        gate: "OwnershipGate",
        interval_sec: float = DEFAULT_POLL_INTERVAL_SEC,
        max_attempts: int = DEFAULT_POLL_MAX_ATTEMPTS,
        sleep: Sleep = asyncio.sleep,
    ):
        self._wallet = wallet
        self._gate = gate
        self.interval_sec = interval_sec
        self.max_attempts = max_attempts
        self._sleep = sleep
        self._poller: Optional[ConfirmationPoller] = None
        self._attempt: Optional[MintAttempt] = None

    @property
    def attempt(self) -> Optional[MintAttempt]:
        return self._attempt

    @property
    def polling(self) -> bool:
        return self._poller is not None and self._poller.active

    def cancel(self):
        """Stop any in-flight poll loop and forget the attempt."""
        if self._poller is not None:
            self._poller.cancel()
            self._poller = None
        self._attempt = None

    async def submit_and_confirm(
        self,
        address: str,
        on_submitted: Optional[Callable[[MintAttempt], None]] = None,
    ) -> MintResult:
        """Mint for ``address`` and poll for ownership.

        UserRejected and TransactionFailed from the wallet propagate
        without entering the poll loop.
        """
        if not self._wallet.is_connected() or not address:
            raise NotConnected("Connect a wallet before minting")
        self.cancel()

        tx_hash = await self._wallet.mint(address)
        attempt = MintAttempt(
            transaction_hash=tx_hash,
            max_attempts=self.max_attempts,
            interval_sec=self.interval_sec,
        )
        self._attempt = attempt
        if on_submitted is not None:
            on_submitted(attempt)

        async def _owned() -> bool:
            return await self._gate.has_access(address)

        def _tick(n: int):
            attempt.poll_attempts = n

        poller = ConfirmationPoller(
            _owned,
            interval_sec=self.interval_sec,
            max_attempts=self.max_attempts,
            sleep=self._sleep,
            on_tick=_tick,
        )
        self._poller = poller
        outcome = await poller.wait()
        if self._poller is poller:
            self._poller = None
        if outcome is MintOutcome.CONFIRMED and self._attempt is attempt:
            self._attempt = None

        logger.info(
            "Mint %s..%s for %s: %s after %d check(s)",
            tx_hash[:10], tx_hash[-4:], short_address(address), outcome.value, attempt.poll_attempts,
        )
        return MintResult(outcome=outcome, attempt=attempt)
