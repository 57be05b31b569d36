"""
config.py - Runtime configuration.

Everything is optional. A missing contract address makes every ownership
check fail closed; a missing profile database puts the session in degraded
mode. Nothing here raises for an absent value.

Environment variables (overridden by the server's command-line flags):
    GATE_CHAIN_ID          target chain id (default 8453, Base)
    GATE_CONTRACT_ADDRESS  pass contract address
    GATE_RPC_URL           JSON-RPC endpoint for the "rpc" wallet
    GATE_WALLET            "simulated" (default) or "rpc"
    GATE_PROFILE_DB        SQLite path for profiles (unset = degraded)
    GATE_POLL_INTERVAL     seconds between confirmation checks (default 2.0)
    GATE_POLL_ATTEMPTS     confirmation check ceiling (default 20)
    GATE_API_HOST / GATE_API_PORT
"""

import os
from typing import Dict, Mapping, Optional

from pydantic import BaseModel, field_validator

DEFAULT_CHAIN_ID = 8453
DEFAULT_POLL_INTERVAL_SEC = 2.0
DEFAULT_POLL_MAX_ATTEMPTS = 20


class ChainSpec(BaseModel):
    """Metadata needed to switch to, or register, the target chain in a wallet."""

    chain_id: int
    name: str
    tag: str
    rpc_url: str = ""
    explorer_url: str = ""
    currency_symbol: str = "ETH"
    currency_decimals: int = 18

    @property
    def hex_id(self) -> str:
        return hex(self.chain_id)

    def add_chain_params(self) -> dict:
        """Parameters for ``wallet_addEthereumChain``."""
        params = {
            "chainId": self.hex_id,
            "chainName": self.name,
            "nativeCurrency": {
                "name": self.currency_symbol,
                "symbol": self.currency_symbol,
                "decimals": self.currency_decimals,
            },
            "rpcUrls": [self.rpc_url] if self.rpc_url else [],
        }
        if self.explorer_url:
            params["blockExplorerUrls"] = [self.explorer_url]
        return params


KNOWN_CHAINS: Dict[int, ChainSpec] = {
    8453: ChainSpec(
        chain_id=8453, name="Base", tag="base",
        rpc_url="https://mainnet.base.org", explorer_url="https://basescan.org",
    ),
    84532: ChainSpec(
        chain_id=84532, name="Base Sepolia", tag="base-sepolia",
        rpc_url="https://sepolia.base.org", explorer_url="https://sepolia.basescan.org",
    ),
}


def chain_for(chain_id: int) -> ChainSpec:
    known = KNOWN_CHAINS.get(chain_id)
    if known is not None:
        return known
    return ChainSpec(chain_id=chain_id, name=f"Chain {chain_id}", tag=f"chain-{chain_id}")


class GateConfig(BaseModel):
    chain_id: int = DEFAULT_CHAIN_ID
    contract_address: str = ""
    rpc_url: str = ""
    wallet: str = "simulated"
    profile_db: Optional[str] = None
    poll_interval_sec: float = DEFAULT_POLL_INTERVAL_SEC
    poll_max_attempts: int = DEFAULT_POLL_MAX_ATTEMPTS
    leaderboard_size: int = 10
    api_host: str = "127.0.0.1"
    api_port: int = 8080

    @field_validator("chain_id", "poll_max_attempts", "leaderboard_size")
    @classmethod
    def must_be_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be >= 1")
        return v

    @field_validator("poll_interval_sec")
    @classmethod
    def interval_not_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("poll interval cannot be negative")
        return v

    @field_validator("wallet")
    @classmethod
    def known_wallet(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("simulated", "rpc"):
            raise ValueError("wallet must be 'simulated' or 'rpc'")
        return v

    @field_validator("contract_address", "rpc_url")
    @classmethod
    def strip_blank(cls, v: str) -> str:
        return v.strip()

    @field_validator("profile_db")
    @classmethod
    def blank_db_is_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        return v.strip()

    @property
    def chain(self) -> ChainSpec:
        spec = chain_for(self.chain_id)
        if self.rpc_url and not spec.rpc_url:
            spec = spec.model_copy(update={"rpc_url": self.rpc_url})
        return spec

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> "GateConfig":
        env = os.environ if environ is None else environ
        values = {}
        mapping = {
            "GATE_CHAIN_ID": "chain_id",
            "GATE_CONTRACT_ADDRESS": "contract_address",
            "GATE_RPC_URL": "rpc_url",
            "GATE_WALLET": "wallet",
            "GATE_PROFILE_DB": "profile_db",
            "GATE_POLL_INTERVAL": "poll_interval_sec",
            "GATE_POLL_ATTEMPTS": "poll_max_attempts",
            "GATE_API_HOST": "api_host",
            "GATE_API_PORT": "api_port",
        }
        for var, field_name in mapping.items():
            if env.get(var):
                values[field_name] = env[var]
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
