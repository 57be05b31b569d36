"""
ephemeral.py - In-memory degraded profile tier.

Selected once at start-up when the persisted store is unreachable. Profiles
live for the session only and are always marked ephemeral. There is no
leaderboard in this tier: listing raises ProfileStoreUnavailable so the
shell shows "offline" rather than a misleading empty board.
"""

import logging
import time
from dataclasses import replace
from typing import Dict, List, Optional

from gatekeeper.domain import PlayerProfile
from gatekeeper.errors import AlreadyExists, ProfileStoreUnavailable

from .base import ProfileStore

logger = logging.getLogger("storage")


class EphemeralProfileStore(ProfileStore):
    is_ephemeral = True

    def __init__(self):
        self._profiles: Dict[str, PlayerProfile] = {}

    async def get(self, key: str) -> Optional[PlayerProfile]:
        profile = self._profiles.get(key)
        return replace(profile) if profile else None

    async def create(self, key: str, profile: PlayerProfile) -> PlayerProfile:
        if key in self._profiles:
            raise AlreadyExists(f"Profile {key} already exists")
        stored = replace(profile, wallet_address=key, is_ephemeral=True)
        self._profiles[key] = stored
        logger.info("Created ephemeral profile for %s", key)
        return replace(stored)

    async def update_best_score(self, key: str, score: int) -> bool:
        profile = self._profiles.get(key)
        if profile is None or score <= profile.best_score:
            return False
        profile.best_score = score
        profile.updated_at = time.time()
        return True

    async def set_username(self, key: str, username: str) -> PlayerProfile:
        # no uniqueness check offline: names are only reserved by the persisted tier
        profile = self._profiles.get(key)
        if profile is None:
            raise KeyError(f"Profile {key} not found")
        profile.username = username
        profile.updated_at = time.time()
        return replace(profile)

    async def list_top_profiles(self, n: int) -> List[PlayerProfile]:
        raise ProfileStoreUnavailable("Leaderboard is offline")
