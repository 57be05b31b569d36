"""Shared fixtures for the gate test suite."""

import asyncio
from typing import Callable, List, Optional

import pytest
import pytest_asyncio
from eth_utils import to_checksum_address

from gatekeeper.chain_simulator import ChainSimulator, SimulatedWalletProvider
from gatekeeper.config import chain_for
from gatekeeper.controller import GameShell
from gatekeeper.storage import StorageManager
from gatekeeper.wallet import BlockchainClient

BASE_CHAIN_ID = 8453

# ── Helpers ─────────────────────────────────────────────────────────────────


class RecordingSleep:
    """Stand-in for asyncio.sleep: records delays and yields once.

    ``on_call(n)`` runs before the n-th sleep returns, e.g. to land a pending
    mint after a given number of confirmation checks.
    """

    def __init__(self, on_call: Optional[Callable[[int], None]] = None):
        self.calls: List[float] = []
        self.on_call = on_call

    async def __call__(self, delay: float):
        self.calls.append(delay)
        if self.on_call is not None:
            self.on_call(len(self.calls))
        await asyncio.sleep(0)


class RecordingGame(GameShell):
    def __init__(self):
        self.setup_calls: List[int] = []
        self.start_calls = 0

    def setup(self, best_score: int):
        self.setup_calls.append(best_score)

    def start(self):
        self.start_calls += 1


# ── Fixtures ────────────────────────────────────────────────────────────────


@pytest.fixture
def addr_a():
    return to_checksum_address("0x" + "aa" * 20)


@pytest.fixture
def addr_b():
    return to_checksum_address("0x" + "bb" * 20)


@pytest.fixture
def chain():
    # long delay: mints land only when a test calls chain.mine()
    return ChainSimulator(confirmation_delay=3600)


@pytest.fixture
def provider(chain, addr_a, addr_b):
    return SimulatedWalletProvider(chain, accounts=[addr_a, addr_b], chain_id=BASE_CHAIN_ID)


@pytest.fixture
def wallet(provider, chain):
    return BlockchainClient(provider, chain_for(BASE_CHAIN_ID), contract_address=chain.contract_address)


@pytest.fixture
def sleep_factory():
    return RecordingSleep


@pytest.fixture
def game():
    return RecordingGame()


@pytest_asyncio.fixture
async def storage():
    sm = StorageManager(":memory:")
    await sm.initialize()
    yield sm
    await sm.close()
