"""
domain.py - Value types shared by the wallet adapter, the minting flow,
the profile stores and the access controller.
"""

import enum
import time
from dataclasses import dataclass, field, replace
from typing import List, Optional


class AccessState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CHECKING_ACCESS = "checking_access"
    WRONG_NETWORK = "wrong_network"
    ACCESS_DENIED = "access_denied"
    ACCESS_GRANTED = "access_granted"
    MINTING = "minting"
    CONFIRMING = "confirming"
    MINT_FAILED = "mint_failed"
    MINT_TIMED_OUT = "mint_timed_out"
    PROFILE_LOADING = "profile_loading"
    READY = "ready"


class AccessMode(enum.Enum):
    """Whether profiles are backed by the persisted store for this session."""

    ONLINE = "online"
    DEGRADED = "degraded"


class MintOutcome(enum.Enum):
    CONFIRMED = "confirmed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


def profile_key(address: str) -> str:
    """Canonical profile key: the lower-cased wallet address."""
    return address.strip().lower()


def short_address(address: Optional[str]) -> str:
    if not address:
        return "-"
    if len(address) <= 12:
        return address
    return f"{address[:6]}..{address[-4:]}"


@dataclass(frozen=True)
class WalletAccount:
    address: str  # EIP-55 checksum form
    chain_id: int

    @property
    def key(self) -> str:
        return profile_key(self.address)


@dataclass(frozen=True)
class OwnershipStatus:
    owned: bool
    subject_address: str
    checked_at: float = field(default_factory=time.time)


@dataclass
class MintAttempt:
    transaction_hash: str
    max_attempts: int
    interval_sec: float
    submitted_at: float = field(default_factory=time.time)
    poll_attempts: int = 0

    def to_dict(self) -> dict:
        return {
            "transaction_hash": self.transaction_hash,
            "submitted_at": self.submitted_at,
            "poll_attempts": self.poll_attempts,
            "max_attempts": self.max_attempts,
            "interval_sec": self.interval_sec,
        }


@dataclass(frozen=True)
class MintResult:
    outcome: MintOutcome
    attempt: MintAttempt


@dataclass
class PlayerProfile:
    wallet_address: str
    username: str = ""
    best_score: int = 0
    chain_tag: str = ""
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    is_ephemeral: bool = False

    @classmethod
    def new(cls, address: str, chain_tag: str = "", ephemeral: bool = False) -> "PlayerProfile":
        now = time.time()
        return cls(
            wallet_address=profile_key(address),
            chain_tag=chain_tag,
            created_at=now,
            updated_at=now,
            is_ephemeral=ephemeral,
        )

    def as_ephemeral(self) -> "PlayerProfile":
        return replace(self, is_ephemeral=True)

    @property
    def display_name(self) -> str:
        return self.username or "Anonymous"

    def to_dict(self) -> dict:
        return {
            "wallet_address": self.wallet_address,
            "username": self.username,
            "display_name": self.display_name,
            "best_score": self.best_score,
            "chain": self.chain_tag,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "is_ephemeral": self.is_ephemeral,
        }


@dataclass(frozen=True)
class LeaderboardView:
    """Top-N snapshot. ``offline`` is set instead of returning stale or empty data."""

    offline: bool
    entries: List[PlayerProfile] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "offline": self.offline,
            "entries": [
                {
                    "rank": i + 1,
                    "name": p.display_name,
                    "best_score": p.best_score,
                    "wallet": short_address(p.wallet_address),
                }
                for i, p in enumerate(self.entries)
            ],
        }
