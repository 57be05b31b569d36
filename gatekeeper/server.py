"""
server.py - Gate server entry point.

Single-process server combining:
 - Wallet provider (in-process simulated wallet + pass contract, or a
   JSON-RPC wallet bridge)
 - SQLite profile storage via StorageManager, degraded to an in-memory
   store when it cannot be opened
 - The access controller that gates the game
 - REST + WebSocket API for the game page (FastAPI on uvicorn, port 8080)

Usage:
    python -m gatekeeper.server [--wallet simulated|rpc] [--profile-db data/profiles.db] [--api-port 8080]
    gatekeeper-server --wallet rpc --rpc-url http://127.0.0.1:8545 --contract 0x...
"""

import argparse
import asyncio
import logging
import os
from typing import List, Optional

import uvicorn
from fastapi import FastAPI
from pydantic import ValidationError

from gatekeeper import __version__
from gatekeeper.chain_simulator import DEFAULT_CONTRACT_ADDRESS, ChainSimulator, SimulatedWalletProvider
from gatekeeper.config import GateConfig
from gatekeeper.controller import AccessController, GameShell
from gatekeeper.domain import AccessMode
from gatekeeper.profile import open_profile_store
from gatekeeper.routers import register_all_routers
from gatekeeper.rpc_provider import HttpJsonRpcProvider
from gatekeeper.storage import StorageManager
from gatekeeper.wallet import BlockchainClient, WalletProvider
from gatekeeper.ws import WSManager

logger = logging.getLogger("server")


class BroadcastGameShell(GameShell):
    """Forwards game hand-offs to the page over the WebSocket."""

    def __init__(self, ws_manager: WSManager):
        self._ws = ws_manager

    def setup(self, best_score: int):
        self._ws.publish("game_setup", {"best_score": best_score})

    def start(self):
        self._ws.publish("game_start", {})


class GateServer:
    """Wires wallet, storage, controller and API together."""

    def __init__(self, config: GateConfig, provider: Optional[WalletProvider] = None,
                 sim_accounts: Optional[List[str]] = None):
        self.config = config
        self.chain: Optional[ChainSimulator] = None
        self.provider = provider or self._build_provider(sim_accounts)

        contract = config.contract_address
        if not contract and self.chain is not None:
            contract = self.chain.contract_address
        self.wallet = BlockchainClient(self.provider, config.chain, contract_address=contract)

        # Storage + controller are initialized async in init_services()
        self.storage: Optional[StorageManager] = None
        self.controller: Optional[AccessController] = None
        self.ws_manager: Optional[WSManager] = None
        self._uvicorn_server: Optional[uvicorn.Server] = None

        self.app = FastAPI(title="Pass Gate", version=__version__)
        self.app.state.server = self
        self._register_routes()
        register_all_routers(self.app)
        if self.chain is not None:
            self.chain.register_routes(self.app)
            logger.info("Chain simulator embedded on gate server")

    def _build_provider(self, sim_accounts: Optional[List[str]]) -> WalletProvider:
        if self.config.wallet == "rpc":
            if not self.config.rpc_url:
                logger.error("Wallet 'rpc' selected without --rpc-url; every wallet request will fail")
            return HttpJsonRpcProvider(self.config.rpc_url or "http://127.0.0.1:8545")
        self.chain = ChainSimulator(contract_address=self.config.contract_address or DEFAULT_CONTRACT_ADDRESS)
        return SimulatedWalletProvider(self.chain, accounts=sim_accounts, chain_id=self.config.chain_id)

    async def init_services(self):
        """Open storage and build the controller (must be called in async context)."""
        if self.controller is not None:
            return
        db_path = self.config.profile_db
        if db_path:
            db_dir = os.path.dirname(db_path)
            if db_dir:
                os.makedirs(db_dir, exist_ok=True)
            self.storage = StorageManager(db_path)
        store = await open_profile_store(self.storage)
        if store.is_ephemeral:
            self.storage = None

        self.controller = AccessController(
            self.wallet, store,
            poll_interval_sec=self.config.poll_interval_sec,
            poll_max_attempts=self.config.poll_max_attempts,
        )
        self.ws_manager = WSManager(self.controller)
        self.controller.attach_game(BroadcastGameShell(self.ws_manager))
        self.controller.on_state_change(lambda _state: self.ws_manager.publish("state", self.controller.snapshot()))

        logger.info(
            "Services initialized (chain=%s, wallet=%s, mode=%s)",
            self.config.chain.name, self.config.wallet, self.controller.mode.value,
        )
        await self.controller.start()

    def _register_routes(self):
        app = self.app

        @app.get("/")
        async def root():
            return {
                "service": "Pass Gate",
                "version": __version__,
                "chain": self.config.chain.name,
                "chain_id": self.config.chain_id,
                "wallet": self.config.wallet,
                "mode": self.controller.mode.value if self.controller else AccessMode.DEGRADED.value,
                "ws_clients": self.ws_manager.client_count if self.ws_manager else 0,
            }

    # -------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------

    async def start(self):
        """Initialize services, then serve the API until stopped."""
        await self.init_services()
        config = uvicorn.Config(
            self.app,
            host=self.config.api_host,
            port=self.config.api_port,
            log_level="info",
        )
        self._uvicorn_server = uvicorn.Server(config)
        logger.info("REST API starting on port %d", self.config.api_port)
        try:
            await self._uvicorn_server.serve()
        finally:
            await self.stop()

    async def stop(self):
        if self._uvicorn_server is not None:
            self._uvicorn_server.should_exit = True
        if self.controller is not None:
            await self.controller.close()
        if self.storage is not None:
            await self.storage.close()
        if isinstance(self.provider, HttpJsonRpcProvider):
            await self.provider.close()


def main():
    """CLI entry point for the gate server."""
    parser = argparse.ArgumentParser(description="Wallet-gated game access server")
    parser.add_argument("--chain-id", type=int, default=None, help="Target chain id (default: 8453, Base)")
    parser.add_argument("--contract", dest="contract_address", default=None, help="Pass contract address")
    parser.add_argument("--wallet", choices=("simulated", "rpc"), default=None, help="Wallet provider (default: simulated)")
    parser.add_argument("--rpc-url", default=None, help="JSON-RPC endpoint for --wallet rpc")
    parser.add_argument("--profile-db", default=None, help="SQLite profile database (unset: degraded mode)")
    parser.add_argument("--poll-interval", dest="poll_interval_sec", type=float, default=None,
                        help="Seconds between mint confirmation checks (default: 2.0)")
    parser.add_argument("--poll-attempts", dest="poll_max_attempts", type=int, default=None,
                        help="Mint confirmation check ceiling (default: 20)")
    parser.add_argument("--api-host", default=None, help="Bind address (default: 127.0.0.1)")
    parser.add_argument("--api-port", type=int, default=None, help="REST API port (default: 8080)")
    parser.add_argument("--sim-account", action="append", default=None,
                        help="Account exposed by the simulated wallet (repeatable)")
    parser.add_argument("--debug", action="store_true", help="Verbose logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s [%(name)-10s] %(levelname)-5s %(message)s",
        datefmt="%H:%M:%S",
    )

    overrides = {k: v for k, v in vars(args).items() if k not in ("sim_account", "debug")}
    try:
        config = GateConfig.from_env(**overrides)
    except ValidationError as e:
        parser.error(str(e))

    server = GateServer(config, sim_accounts=args.sim_account)

    logger.info("=" * 60)
    logger.info("  Pass Gate %s", __version__)
    logger.info("  Chain:      %s (%d)", config.chain.name, config.chain_id)
    logger.info("  Wallet:     %s", config.wallet)
    logger.info("  Contract:   %s", server.wallet.contract_address or "(not set)")
    logger.info("  Profile DB: %s", config.profile_db or "(none, degraded mode)")
    logger.info("  REST API:   http://%s:%d", config.api_host, config.api_port)
    logger.info("=" * 60)

    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        logger.info("Shutting down...")


if __name__ == "__main__":
    main()
