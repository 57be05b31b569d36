"""
test_state_machine.py - Access controller state machine validation

  DISCONNECTED -> CONNECTING -> CHECKING_ACCESS -> ACCESS_GRANTED -> PROFILE_LOADING -> READY
                                               \\-> ACCESS_DENIED -> MINTING -> CONFIRMING
                                               \\-> WRONG_NETWORK

Validates:
 - The transition table and rejection of illegal transitions
 - Holder and non-holder journeys, including the mint flow
 - Failure paths: rejected prompts, missing wallet, wrong network, read errors
 - Session changes: account switch, disconnect, stale results
 - Degraded mode and the game hand-off
"""

import asyncio

import pytest
import pytest_asyncio

from gatekeeper.chain_simulator import SimulatedWalletProvider
from gatekeeper.config import chain_for
from gatekeeper.controller import ALWAYS_ALLOWED, LEGAL_TRANSITIONS, AccessController, is_legal
from gatekeeper.domain import AccessMode, AccessState, PlayerProfile
from gatekeeper.errors import InvalidTransition
from gatekeeper.profile import open_profile_store
from gatekeeper.storage import EphemeralProfileStore, StorageManager
from gatekeeper.wallet import BlockchainClient, ProviderRpcError

S = AccessState


async def _spin(times: int = 10):
    for _ in range(times):
        await asyncio.sleep(0)


class SlowCallProvider(SimulatedWalletProvider):
    """Holds every balance read until ``release`` is set."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.hold_calls = False
        self.release = asyncio.Event()

    async def request(self, method, params=None):
        if method == "eth_call" and self.hold_calls:
            await self.release.wait()
        return await super().request(method, params)


@pytest_asyncio.fixture
async def make_controller(wallet, game, sleep_factory):
    created = []

    def _make(store, wallet_client=None, sleep=None, max_attempts=5):
        controller = AccessController(
            wallet_client or wallet, store, game,
            poll_interval_sec=2.0, poll_max_attempts=max_attempts,
            sleep=sleep or sleep_factory(),
        )
        created.append(controller)
        return controller

    yield _make
    for controller in created:
        await controller.close()


# ── Transition table ────────────────────────────────────────────────────────


class TestTransitionTable:
    def test_every_state_has_an_entry(self):
        assert set(LEGAL_TRANSITIONS) == set(AccessState)

    @pytest.mark.parametrize("state", list(AccessState))
    def test_disconnect_and_recheck_reachable_from_anywhere(self, state):
        for target in ALWAYS_ALLOWED:
            assert is_legal(state, target)

    @pytest.mark.parametrize("old,new", [
        (S.DISCONNECTED, S.READY),
        (S.DISCONNECTED, S.ACCESS_GRANTED),
        (S.ACCESS_DENIED, S.READY),
        (S.ACCESS_DENIED, S.PROFILE_LOADING),
        (S.WRONG_NETWORK, S.ACCESS_GRANTED),
        (S.READY, S.MINTING),
        (S.MINTING, S.ACCESS_GRANTED),
        (S.MINT_TIMED_OUT, S.READY),
    ])
    def test_illegal(self, old, new):
        assert not is_legal(old, new)

    @pytest.mark.parametrize("old,new", [
        (S.ACCESS_DENIED, S.MINTING),
        (S.MINTING, S.CONFIRMING),
        (S.CONFIRMING, S.ACCESS_GRANTED),
        (S.CONFIRMING, S.MINT_TIMED_OUT),
        (S.MINT_FAILED, S.MINTING),
        (S.ACCESS_GRANTED, S.PROFILE_LOADING),
        (S.PROFILE_LOADING, S.READY),
    ])
    def test_legal(self, old, new):
        assert is_legal(old, new)

    @pytest.mark.asyncio
    async def test_controller_rejects_illegal_transition(self, make_controller):
        controller = make_controller(EphemeralProfileStore())
        with pytest.raises(InvalidTransition):
            controller._transition(S.READY, "skip the gate")
        assert controller.state is S.DISCONNECTED


# ── Journeys ────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestHolderJourney:
    async def test_connect_holder_reaches_ready(self, make_controller, storage, chain, game, addr_a):
        chain.grant(addr_a)
        controller = make_controller(storage.profiles)

        assert await controller.connect() is S.READY
        assert controller.is_unlocked
        assert controller.mode is AccessMode.ONLINE
        assert controller.transition_log == [
            (S.DISCONNECTED, S.CONNECTING),
            (S.CONNECTING, S.CHECKING_ACCESS),
            (S.CHECKING_ACCESS, S.ACCESS_GRANTED),
            (S.ACCESS_GRANTED, S.PROFILE_LOADING),
            (S.PROFILE_LOADING, S.READY),
        ]
        profile = controller.current_profile()
        assert profile.wallet_address == addr_a.lower()
        assert profile.best_score == 0
        assert not profile.is_ephemeral
        assert game.setup_calls == [0]

    async def test_existing_best_score_handed_to_game(self, make_controller, storage, chain, game, addr_a):
        chain.grant(addr_a)
        key = addr_a.lower()
        await storage.profiles.create(key, PlayerProfile.new(key))
        await storage.profiles.update_best_score(key, 120)
        controller = make_controller(storage.profiles)
        await controller.connect()
        assert game.setup_calls == [120]

    async def test_silent_restore_on_start(self, chain, storage, make_controller, addr_a):
        chain.grant(addr_a)
        provider = SimulatedWalletProvider(chain, accounts=[addr_a], chain_id=8453, authorized=True)
        wallet = BlockchainClient(provider, chain_for(8453), contract_address=chain.contract_address)
        controller = make_controller(storage.profiles, wallet_client=wallet)
        assert await controller.start() is S.READY
        assert "eth_requestAccounts" not in provider.requests

    async def test_start_without_authorisation_stays_disconnected(self, make_controller, storage, provider):
        controller = make_controller(storage.profiles)
        assert await controller.start() is S.DISCONNECTED
        assert "eth_requestAccounts" not in provider.requests

    async def test_score_submission_is_monotonic(self, make_controller, storage, chain, addr_a):
        chain.grant(addr_a)
        controller = make_controller(storage.profiles)
        await controller.connect()
        assert await controller.submit_score(10) is True
        assert await controller.submit_score(5) is False
        assert controller.current_profile().best_score == 10
        assert (await storage.profiles.get(addr_a.lower())).best_score == 10

    async def test_negative_score_rejected(self, make_controller, storage, chain, addr_a):
        chain.grant(addr_a)
        controller = make_controller(storage.profiles)
        await controller.connect()
        with pytest.raises(ValueError):
            await controller.submit_score(-1)


@pytest.mark.asyncio
class TestMintJourney:
    async def test_non_holder_is_denied(self, make_controller, storage, game):
        controller = make_controller(storage.profiles)
        assert await controller.connect() is S.ACCESS_DENIED
        assert not controller.is_unlocked
        assert controller.current_profile() is None
        assert game.setup_calls == []
        assert await storage.profiles.count() == 0

    async def test_mint_then_ready(self, make_controller, storage, chain, game, sleep_factory):
        sleep = sleep_factory(on_call=lambda n: chain.mine() if n == 2 else None)
        controller = make_controller(storage.profiles, sleep=sleep)
        await controller.connect()

        assert await controller.mint() is S.READY
        assert controller.transition_log[-5:] == [
            (S.ACCESS_DENIED, S.MINTING),
            (S.MINTING, S.CONFIRMING),
            (S.CONFIRMING, S.ACCESS_GRANTED),
            (S.ACCESS_GRANTED, S.PROFILE_LOADING),
            (S.PROFILE_LOADING, S.READY),
        ]
        assert sleep.calls == [2.0, 2.0]
        assert controller.mint_attempt is None
        assert controller.ownership.owned
        assert game.setup_calls == [0]

    async def test_mint_times_out_then_refresh(self, make_controller, storage, chain, sleep_factory):
        sleep = sleep_factory()
        controller = make_controller(storage.profiles, sleep=sleep, max_attempts=3)
        await controller.connect()

        assert await controller.mint() is S.MINT_TIMED_OUT
        assert len(sleep.calls) == 3
        assert "Refresh" in controller.status_message
        assert controller.mint_attempt is None

        chain.mine()
        assert await controller.refresh() is S.READY

    async def test_rejected_mint_can_be_retried(self, make_controller, storage, chain, provider, sleep_factory):
        sleep = sleep_factory(on_call=lambda n: chain.mine())
        controller = make_controller(storage.profiles, sleep=sleep)
        await controller.connect()

        provider.reject_transactions = True
        assert await controller.mint() is S.MINT_FAILED
        assert "cancelled" in controller.status_message
        assert sleep.calls == []

        provider.reject_transactions = False
        assert await controller.mint() is S.READY

    async def test_mint_ignored_when_not_denied(self, make_controller, storage, chain, addr_a):
        chain.grant(addr_a)
        controller = make_controller(storage.profiles)
        await controller.connect()
        assert controller.begin_mint() is None
        assert controller.state is S.READY
        assert chain.pending == []


@pytest.mark.asyncio
class TestFailures:
    async def test_rejected_connect(self, make_controller, storage, provider, chain, addr_a):
        chain.grant(addr_a)
        provider.reject_connect = True
        controller = make_controller(storage.profiles)
        assert await controller.connect() is S.DISCONNECTED
        assert "rejected" in controller.status_message

        provider.reject_connect = False
        assert await controller.connect() is S.READY

    async def test_no_wallet_installed(self, make_controller, storage, chain):
        wallet = BlockchainClient(None, chain_for(8453), contract_address=chain.contract_address)
        controller = make_controller(storage.profiles, wallet_client=wallet)
        assert await controller.connect() is S.DISCONNECTED
        assert "No wallet found" in controller.status_message

    async def test_pending_wallet_request_is_a_connection_failure(self, make_controller, storage, chain, addr_a):
        class BusyProvider(SimulatedWalletProvider):
            async def request(self, method, params=None):
                if method == "eth_requestAccounts":
                    raise ProviderRpcError(-32002, "Request of type 'wallet_requestPermissions' already pending")
                return await super().request(method, params)

        provider = BusyProvider(chain, accounts=[addr_a], chain_id=8453)
        wallet = BlockchainClient(provider, chain_for(8453), contract_address=chain.contract_address)
        controller = make_controller(storage.profiles, wallet_client=wallet)
        assert await controller.connect() is S.DISCONNECTED
        assert controller.status_message.startswith("Wallet connection failed")
        assert "already pending" in controller.status_message
        assert "No wallet found" not in controller.status_message

    async def test_wrong_network_then_refresh(self, make_controller, storage, chain, addr_a):
        chain.grant(addr_a)
        provider = SimulatedWalletProvider(chain, accounts=[addr_a], chain_id=1, known_chains={1, 8453})
        provider.reject_switch = True
        wallet = BlockchainClient(provider, chain_for(8453), contract_address=chain.contract_address)
        controller = make_controller(storage.profiles, wallet_client=wallet)

        assert await controller.connect() is S.WRONG_NETWORK
        assert "Base" in controller.status_message

        provider.reject_switch = False
        assert await controller.refresh() is S.READY
        assert wallet.chain_id == 8453

    async def test_wrong_network_fixed_in_wallet(self, make_controller, storage, chain, addr_a):
        chain.grant(addr_a)
        provider = SimulatedWalletProvider(chain, accounts=[addr_a], chain_id=1, known_chains={1, 8453})
        provider.reject_switch = True
        wallet = BlockchainClient(provider, chain_for(8453), contract_address=chain.contract_address)
        controller = make_controller(storage.profiles, wallet_client=wallet)
        await controller.connect()

        provider.user_switch_chain(8453)
        await controller.wait_settled()
        assert controller.state is S.READY

    async def test_read_failure_denies_access(self, make_controller, storage, chain, addr_a):
        chain.grant(addr_a)
        chain.set_read_failure(True)
        controller = make_controller(storage.profiles)
        assert await controller.connect() is S.ACCESS_DENIED

        chain.set_read_failure(False)
        assert await controller.refresh() is S.READY

    async def test_missing_contract_denies_access(self, make_controller, storage, provider, chain, addr_a):
        chain.grant(addr_a)
        wallet = BlockchainClient(provider, chain_for(8453), contract_address="")
        controller = make_controller(storage.profiles, wallet_client=wallet)
        assert await controller.connect() is S.ACCESS_DENIED

    async def test_refresh_ignored_when_ready(self, make_controller, storage, chain, addr_a):
        chain.grant(addr_a)
        controller = make_controller(storage.profiles)
        await controller.connect()
        assert controller.begin_refresh() is None
        assert controller.state is S.READY


# ── Session changes ─────────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestSessionChanges:
    async def test_account_switch_loads_new_profile(self, make_controller, storage, chain, provider, game, addr_a, addr_b):
        chain.grant(addr_a)
        chain.grant(addr_b)
        controller = make_controller(storage.profiles)
        await controller.connect()
        await controller.submit_score(10)

        provider.switch_account(addr_b)
        await controller.wait_settled()

        assert controller.state is S.READY
        assert controller.account.address == addr_b
        assert controller.current_profile().wallet_address == addr_b.lower()
        assert controller.current_profile().best_score == 0
        assert game.setup_calls == [0, 0]

    async def test_switch_to_non_holder_locks_game(self, make_controller, storage, chain, provider, addr_a, addr_b):
        chain.grant(addr_a)
        controller = make_controller(storage.profiles)
        await controller.connect()

        provider.switch_account(addr_b)
        await controller.wait_settled()
        assert controller.state is S.ACCESS_DENIED
        assert controller.current_profile() is None
        assert not controller.start_game()

    async def test_stale_check_is_discarded(self, chain, storage, make_controller, game, addr_a, addr_b):
        chain.grant(addr_a)
        provider = SlowCallProvider(chain, accounts=[addr_a, addr_b], chain_id=8453)
        provider.hold_calls = True
        wallet = BlockchainClient(provider, chain_for(8453), contract_address=chain.contract_address)
        controller = make_controller(storage.profiles, wallet_client=wallet)

        connecting = asyncio.create_task(controller.connect())
        await _spin()
        assert controller.state is S.CHECKING_ACCESS
        assert controller.account.address == addr_a

        provider.switch_account(addr_b)
        provider.release.set()
        await connecting
        await controller.wait_settled()

        # A holds a pass, B does not: A's answer must never unlock B's session
        assert controller.state is S.ACCESS_DENIED
        assert controller.account.address == addr_b
        assert controller.current_profile() is None
        assert game.setup_calls == []

    async def test_rapid_switches_settle_on_last_account(self, chain, storage, make_controller, game, addr_a, addr_b):
        chain.grant(addr_a)
        chain.grant(addr_b)
        provider = SlowCallProvider(chain, accounts=[addr_a, addr_b], chain_id=8453)
        provider.hold_calls = True
        wallet = BlockchainClient(provider, chain_for(8453), contract_address=chain.contract_address)
        controller = make_controller(storage.profiles, wallet_client=wallet)

        connecting = asyncio.create_task(controller.connect())
        await _spin()
        provider.switch_account(addr_b)
        await _spin()
        provider.switch_account(addr_a)
        await _spin()
        provider.disconnect()
        assert controller.state is S.DISCONNECTED
        provider.emit("accountsChanged", [addr_b])
        await _spin()
        assert controller.state is S.CHECKING_ACCESS

        provider.release.set()
        await connecting
        await controller.wait_settled()

        assert controller.state is S.READY
        assert controller.account.address == addr_b
        assert controller.current_profile().wallet_address == addr_b.lower()
        assert game.setup_calls == [0]
        assert [new for _old, new in controller.transition_log].count(S.READY) == 1
        assert await storage.profiles.get(addr_a.lower()) is None

    async def test_rapid_switches_ending_in_disconnect(self, chain, storage, make_controller, game, addr_a, addr_b):
        chain.grant(addr_a)
        chain.grant(addr_b)
        provider = SlowCallProvider(chain, accounts=[addr_a, addr_b], chain_id=8453)
        provider.hold_calls = True
        wallet = BlockchainClient(provider, chain_for(8453), contract_address=chain.contract_address)
        controller = make_controller(storage.profiles, wallet_client=wallet)

        connecting = asyncio.create_task(controller.connect())
        await _spin()
        provider.switch_account(addr_b)
        await _spin()
        provider.disconnect()
        provider.release.set()
        await connecting
        await controller.wait_settled()

        assert controller.state is S.DISCONNECTED
        assert controller.account is None
        assert controller.current_profile() is None
        assert game.setup_calls == []

    async def test_same_account_event_is_ignored(self, make_controller, storage, chain, provider, addr_a):
        chain.grant(addr_a)
        controller = make_controller(storage.profiles)
        await controller.connect()
        transitions = len(controller.transition_log)
        controller.on_account_change(addr_a.lower())
        assert len(controller.transition_log) == transitions
        assert controller.state is S.READY

    async def test_disconnect_clears_session(self, make_controller, storage, chain, provider, addr_a):
        chain.grant(addr_a)
        controller = make_controller(storage.profiles)
        await controller.connect()

        provider.disconnect()
        assert controller.state is S.DISCONNECTED
        assert controller.account is None
        assert controller.current_profile() is None
        assert controller.ownership is None
        assert not controller.is_unlocked
        assert controller.snapshot()["profile"] is None

    async def test_disconnect_stops_confirmation_polling(self, make_controller, storage, provider):
        async def never(_delay):
            await asyncio.Event().wait()

        controller = make_controller(storage.profiles, sleep=never)
        await controller.connect()
        controller.begin_mint()
        await _spin()
        assert controller.state is S.CONFIRMING
        assert controller.mint_attempt is not None

        provider.disconnect()
        await _spin()
        assert controller.state is S.DISCONNECTED
        assert controller.mint_attempt is None
        assert not controller._minter.polling

    async def test_explicit_disconnect(self, make_controller, storage, chain, addr_a):
        chain.grant(addr_a)
        controller = make_controller(storage.profiles)
        await controller.connect()
        assert await controller.disconnect() is S.DISCONNECTED
        assert controller.account is None


# ── Degraded mode and game hand-off ─────────────────────────────────────────


@pytest.mark.asyncio
class TestDegradedMode:
    async def test_ready_with_ephemeral_profile(self, make_controller, chain, addr_a):
        chain.grant(addr_a)
        controller = make_controller(EphemeralProfileStore())
        assert controller.mode is AccessMode.DEGRADED

        assert await controller.connect() is S.READY
        profile = controller.current_profile()
        assert profile.is_ephemeral
        assert "offline" in controller.status_message
        assert await controller.submit_score(42) is True
        assert controller.current_profile().best_score == 42

    async def test_leaderboard_offline(self, make_controller, chain, addr_a):
        chain.grant(addr_a)
        controller = make_controller(EphemeralProfileStore())
        await controller.connect()
        view = await controller.leaderboard(10)
        assert view.offline
        assert view.entries == []

    async def test_username_taken(self, make_controller, storage, chain, addr_a):
        chain.grant(addr_a)
        other = "0x" + "cc" * 20
        await storage.profiles.create(other, PlayerProfile.new(other))
        await storage.profiles.set_username(other, "Neo")
        controller = make_controller(storage.profiles)
        await controller.connect()

        assert await controller.set_username("neo") is False
        assert "taken" in controller.status_message
        assert await controller.set_username("Trinity") is True
        assert controller.current_profile().display_name == "Trinity"


@pytest.mark.asyncio
class TestGameHandOff:
    async def test_start_is_noop_until_ready(self, make_controller, storage, game):
        controller = make_controller(storage.profiles)
        assert controller.start_game() is False
        await controller.connect()
        assert controller.state is S.ACCESS_DENIED
        assert controller.start_game() is False
        assert game.start_calls == 0

    async def test_start_when_ready(self, make_controller, storage, chain, game, addr_a):
        chain.grant(addr_a)
        controller = make_controller(storage.profiles)
        await controller.connect()
        assert controller.start_game() is True
        assert game.start_calls == 1

    async def test_listeners_see_every_transition(self, make_controller, storage, chain, addr_a):
        chain.grant(addr_a)
        controller = make_controller(storage.profiles)
        seen = []
        controller.on_state_change(seen.append)
        await controller.connect()
        assert seen == [S.CONNECTING, S.CHECKING_ACCESS, S.ACCESS_GRANTED, S.PROFILE_LOADING, S.READY]

    async def test_snapshot(self, make_controller, storage, chain, addr_a):
        chain.grant(addr_a)
        controller = make_controller(storage.profiles)
        await controller.connect()
        snap = controller.snapshot()
        assert snap["state"] == "ready"
        assert snap["unlocked"] is True
        assert snap["address"] == addr_a
        assert snap["chain_id"] == 8453
        assert snap["owned"] is True
        assert snap["profile"]["display_name"] == "Anonymous"


# ── Reference scenarios ─────────────────────────────────────────────────────


class ScriptedClient(BlockchainClient):
    """Blockchain client whose ownership answers and mint hash are scripted."""

    def __init__(self, provider, answers, tx_hash="0x123"):
        super().__init__(provider, chain_for(8453), contract_address="0x" + "c0" * 20)
        self.answers = list(answers)
        self.checks = 0
        self.tx_hash = tx_hash

    async def check_ownership(self, address):
        self.checks += 1
        return self.answers.pop(0)

    async def mint(self, address):
        return self.tx_hash


@pytest.mark.asyncio
class TestReferenceScenarios:
    async def test_holder_without_profile(self, chain, storage, make_controller, game):
        addr = "0x" + "a" * 40
        provider = SimulatedWalletProvider(chain, accounts=[addr], chain_id=8453)
        wallet = ScriptedClient(provider, answers=[True])
        controller = make_controller(storage.profiles, wallet_client=wallet)

        assert await controller.connect() is S.READY
        assert (await storage.profiles.get(addr.lower())).best_score == 0
        assert game.setup_calls == [0]

    async def test_mint_confirmed_on_third_check(self, chain, storage, make_controller):
        addr = "0x" + "b" * 40
        provider = SimulatedWalletProvider(chain, accounts=[addr], chain_id=8453)
        # access check, then three confirmation ticks
        wallet = ScriptedClient(provider, answers=[False, False, False, True])
        controller = make_controller(storage.profiles, wallet_client=wallet)
        seen_hashes = []
        controller.on_state_change(
            lambda s: seen_hashes.append(controller.mint_attempt.transaction_hash) if s is S.CONFIRMING else None
        )

        assert await controller.connect() is S.ACCESS_DENIED
        await controller.mint()

        assert seen_hashes == ["0x123"]
        assert wallet.checks == 4
        assert (S.CONFIRMING, S.ACCESS_GRANTED) in controller.transition_log
        assert (S.ACCESS_GRANTED, S.PROFILE_LOADING) in controller.transition_log
        assert controller.state is S.READY

    async def test_unreachable_store_gets_zero_writes(self, make_controller, chain, addr_a, tmp_path):
        storage = StorageManager(str(tmp_path / "no" / "such" / "profiles.db"))
        store = await open_profile_store(storage)
        chain.grant(addr_a)
        controller = make_controller(store)

        assert await controller.connect() is S.READY
        assert controller.current_profile().is_ephemeral
        assert await controller.submit_score(9) is True
        assert await controller.set_username("offline") is True
        assert storage.profiles is None
        assert not (tmp_path / "no").exists()
