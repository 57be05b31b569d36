"""
profile.py - Player profile service.

Sits between the access controller and a ProfileStore tier:
 - open_profile_store(): picks the persisted or the ephemeral tier, once
 - ProfileService.resolve(): existing or new profile; a store outage falls
   back to an ephemeral profile instead of failing
 - record_score(): best score only ever goes up
 - rename(), leaderboard()
"""

import logging
import re
from dataclasses import replace
from typing import TYPE_CHECKING, Optional

from gatekeeper.domain import LeaderboardView, PlayerProfile, profile_key, short_address
from gatekeeper.errors import AlreadyExists, ProfileStoreUnavailable
from gatekeeper.storage import EphemeralProfileStore, ProfileStore

if TYPE_CHECKING:
    from gatekeeper.storage import StorageManager

logger = logging.getLogger("profile")

USERNAME_RE = re.compile(r"^[A-Za-z0-9_\- ]{3,20}$")


async def open_profile_store(storage: Optional["StorageManager"]) -> ProfileStore:
    """Return the persisted tier if it can be opened, otherwise the ephemeral one."""
    if storage is None:
        logger.warning("No profile database configured; running in degraded mode")
        return EphemeralProfileStore()
    try:
        await storage.initialize()
    except ProfileStoreUnavailable as e:
        logger.warning("Profile store unavailable (%s); running in degraded mode", e)
        return EphemeralProfileStore()
    return storage.profiles


def validate_username(username: str) -> str:
    name = (username or "").strip()
    if not USERNAME_RE.match(name):
        raise ValueError("Username must be 3-20 characters: letters, digits, space, '-' or '_'")
    return name


class ProfileService:
    """Profile resolution and updates on top of one store tier."""

    def __init__(self, store: ProfileStore, chain_tag: str = ""):
        self._store = store
        self._chain_tag = chain_tag

    @property
    def degraded(self) -> bool:
        return self._store.is_ephemeral

    async def resolve(self, address: str) -> PlayerProfile:
        """Existing or freshly created profile for ``address``. Never raises for outages."""
        key = profile_key(address)
        try:
            profile = await self._store.get(key)
            if profile is None:
                fresh = PlayerProfile.new(key, chain_tag=self._chain_tag, ephemeral=self.degraded)
                try:
                    profile = await self._store.create(key, fresh)
                except AlreadyExists:
                    # created concurrently by another session
                    profile = await self._store.get(key)
                    if profile is None:
                        raise ProfileStoreUnavailable(f"Profile {key} vanished after create race")
        except ProfileStoreUnavailable as e:
            logger.warning("Profile store failed for %s (%s); using ephemeral profile", short_address(key), e)
            return PlayerProfile.new(key, chain_tag=self._chain_tag, ephemeral=True)
        if self.degraded and not profile.is_ephemeral:
            profile = profile.as_ephemeral()
        return profile

    async def record_score(self, profile: PlayerProfile, score: int) -> bool:
        """Raise ``profile.best_score`` to ``score`` if higher. Returns True if it changed."""
        if score <= profile.best_score:
            return False
        profile.best_score = score
        if profile.is_ephemeral and not self.degraded:
            # fallback profile from a mid-session outage: never written remotely
            return True
        try:
            await self._store.update_best_score(profile.wallet_address, score)
        except ProfileStoreUnavailable as e:
            logger.warning("Could not persist score %d for %s: %s", score, short_address(profile.wallet_address), e)
        return True

    async def rename(self, profile: PlayerProfile, username: str) -> PlayerProfile:
        """Set the display name. Raises ValueError or UsernameTaken."""
        name = validate_username(username)
        if profile.is_ephemeral and not self.degraded:
            return replace(profile, username=name)
        updated = await self._store.set_username(profile.wallet_address, name)
        if profile.is_ephemeral:
            updated = updated.as_ephemeral()
        return updated

    async def leaderboard(self, n: int = 10) -> LeaderboardView:
        if self.degraded:
            return LeaderboardView(offline=True)
        try:
            entries = await self._store.list_top_profiles(n)
        except ProfileStoreUnavailable as e:
            logger.warning("Leaderboard unavailable: %s", e)
            return LeaderboardView(offline=True)
        return LeaderboardView(offline=False, entries=entries)
