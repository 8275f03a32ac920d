"""Storage backends."""

from chatline.config import Settings, settings as default_settings
from chatline.db.base import MessageStatsRow, Storage, StorageSession
from chatline.db.memory import MemoryStorage
from chatline.db.postgres import Database, PostgresStorage


def create_storage(config: Settings | None = None) -> Storage:
    """Build the storage backend selected by configuration."""
    config = config or default_settings
    if config.storage_backend == "memory":
        return MemoryStorage()
    return PostgresStorage(Database(config))


__all__ = [
    "Database",
    "MemoryStorage",
    "MessageStatsRow",
    "PostgresStorage",
    "Storage",
    "StorageSession",
    "create_storage",
]
