import logging
import time
from typing import List, Optional

import aiosqlite

from gatekeeper.domain import PlayerProfile
from gatekeeper.errors import AlreadyExists, ProfileStoreUnavailable, UsernameTaken

from .base import ProfileStore

logger = logging.getLogger("storage")

_COLUMNS = "wallet_address, username, best_score, chain, created_at, updated_at"


def _row_to_profile(row) -> PlayerProfile:
    return PlayerProfile(
        wallet_address=row[0],
        username=row[1],
        best_score=row[2],
        chain_tag=row[3],
        created_at=row[4],
        updated_at=row[5],
    )


class ProfileRepo(ProfileStore):
    """CRUD operations for the profiles table."""

    def __init__(self, db: aiosqlite.Connection):
        self._db = db

    async def get(self, key: str) -> Optional[PlayerProfile]:
        try:
            async with self._db.execute(
                f"SELECT {_COLUMNS} FROM profiles WHERE wallet_address = ?",
                (key,),
            ) as cursor:
                row = await cursor.fetchone()
        except (aiosqlite.Error, ValueError) as e:
            raise ProfileStoreUnavailable(f"Profile lookup failed: {e}") from e
        if row is None:
            return None
        return _row_to_profile(row)

    async def create(self, key: str, profile: PlayerProfile) -> PlayerProfile:
        now = time.time()
        try:
            await self._db.execute(
                f"INSERT INTO profiles ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
                (key, profile.username, max(0, profile.best_score), profile.chain_tag,
                 profile.created_at or now, now),
            )
            await self._db.commit()
        except aiosqlite.IntegrityError as e:
            await self._rollback()
            if "username" in str(e):
                raise UsernameTaken(f"Username '{profile.username}' is taken") from e
            raise AlreadyExists(f"Profile {key} already exists") from e
        except (aiosqlite.Error, ValueError) as e:
            raise ProfileStoreUnavailable(f"Profile create failed: {e}") from e
        logger.info("Created profile %s", key)
        return await self.get(key)

    async def update_best_score(self, key: str, score: int) -> bool:
        try:
            cursor = await self._db.execute(
                "UPDATE profiles SET best_score = ?, updated_at = ? "
                "WHERE wallet_address = ? AND best_score < ?",
                (score, time.time(), key, score),
            )
            await self._db.commit()
        except (aiosqlite.Error, ValueError) as e:
            raise ProfileStoreUnavailable(f"Score update failed: {e}") from e
        updated = cursor.rowcount > 0
        if updated:
            logger.info("New best score for %s: %d", key, score)
        return updated

    async def set_username(self, key: str, username: str) -> PlayerProfile:
        try:
            cursor = await self._db.execute(
                "UPDATE profiles SET username = ?, updated_at = ? WHERE wallet_address = ?",
                (username, time.time(), key),
            )
            await self._db.commit()
        except aiosqlite.IntegrityError as e:
            await self._rollback()
            raise UsernameTaken(f"Username '{username}' is taken") from e
        except (aiosqlite.Error, ValueError) as e:
            raise ProfileStoreUnavailable(f"Username update failed: {e}") from e
        if cursor.rowcount == 0:
            raise KeyError(f"Profile {key} not found")
        return await self.get(key)

    async def list_top_profiles(self, n: int) -> List[PlayerProfile]:
        result = []
        try:
            async with self._db.execute(
                f"SELECT {_COLUMNS} FROM profiles "
                "ORDER BY best_score DESC, updated_at ASC LIMIT ?",
                (n,),
            ) as cursor:
                async for row in cursor:
                    result.append(_row_to_profile(row))
        except (aiosqlite.Error, ValueError) as e:
            raise ProfileStoreUnavailable(f"Leaderboard query failed: {e}") from e
        return result

    async def count(self) -> int:
        try:
            async with self._db.execute("SELECT COUNT(*) FROM profiles") as cursor:
                row = await cursor.fetchone()
        except (aiosqlite.Error, ValueError) as e:
            raise ProfileStoreUnavailable(f"Profile count failed: {e}") from e
        return row[0] if row else 0

    async def _rollback(self):
        try:
            await self._db.rollback()
        except aiosqlite.Error:
            logger.exception("Rollback failed")
