import logging
from typing import Optional

try:
    import aiosqlite
except ImportError:
    raise ImportError(
        "aiosqlite is required for the storage layer. "
        "Install with: pip install aiosqlite"
    )

from gatekeeper.errors import ProfileStoreUnavailable

from ._migrate import run_migrations
from .profiles import ProfileRepo

logger = logging.getLogger("storage")


class StorageManager:
    """Top-level manager: opens the database, runs migrations, exposes repos."""

    def __init__(self, db_path: str = "data/profiles.db"):
        self.db_path = db_path
        self._db: Optional[aiosqlite.Connection] = None
        self.profiles: Optional[ProfileRepo] = None

    async def initialize(self):
        try:
            self._db = await aiosqlite.connect(self.db_path)
            await self._db.execute("PRAGMA journal_mode=WAL")
            await run_migrations(self._db, logger)
        except (aiosqlite.Error, OSError) as e:
            await self.close()
            raise ProfileStoreUnavailable(f"Cannot open profile store {self.db_path}: {e}") from e

        self.profiles = ProfileRepo(self._db)
        logger.info("Storage initialized: %s", self.db_path)

    async def close(self):
        if self._db:
            try:
                await self._db.close()
            finally:
                self._db = None
                self.profiles = None
            logger.info("Storage closed")
