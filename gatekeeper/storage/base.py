"""Profile store interface shared by the persisted and the ephemeral tier."""

from abc import ABC, abstractmethod
from typing import List, Optional

from gatekeeper.domain import PlayerProfile


class ProfileStore(ABC):
    """Player profiles keyed by lower-cased wallet address.

    Every method may raise ProfileStoreUnavailable.
    """

    is_ephemeral: bool = False

    @abstractmethod
    async def get(self, key: str) -> Optional[PlayerProfile]:
        ...

    @abstractmethod
    async def create(self, key: str, profile: PlayerProfile) -> PlayerProfile:
        """Insert a new profile. Raises AlreadyExists if ``key`` has one."""

    @abstractmethod
    async def update_best_score(self, key: str, score: int) -> bool:
        """Raise the stored best score. No-op (returns False) if ``score`` is not higher."""

    @abstractmethod
    async def set_username(self, key: str, username: str) -> PlayerProfile:
        """Raises UsernameTaken on a case-insensitive clash, KeyError if no profile."""

    @abstractmethod
    async def list_top_profiles(self, n: int) -> List[PlayerProfile]:
        """Fresh snapshot of the ``n`` best profiles, highest score first."""
