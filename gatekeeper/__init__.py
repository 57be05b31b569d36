"""
Pass Gate - wallet-gated access to a browser game.

A player connects a wallet, proves ownership of a pass token on the target
chain (or mints one), and only then gets a profile and an unlocked game.
Includes the access controller, wallet adapters, SQLite profile storage,
a chain simulator and a REST/WebSocket API.
"""

__version__ = "0.1.0"

__all__ = [
    "chain_simulator",
    "config",
    "controller",
    "domain",
    "errors",
    "minting",
    "ownership",
    "profile",
    "rpc_provider",
    "server",
    "storage",
    "wallet",
    "ws",
]
