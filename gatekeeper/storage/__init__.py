from ._schema import SCHEMA_VERSION, SCHEMA_SQL
from .base import ProfileStore
from .profiles import ProfileRepo
from .ephemeral import EphemeralProfileStore
from .manager import StorageManager

__all__ = [
    "SCHEMA_VERSION",
    "SCHEMA_SQL",
    "ProfileStore",
    "ProfileRepo",
    "EphemeralProfileStore",
    "StorageManager",
]
