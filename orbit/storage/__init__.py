"""Storage backends: directory-as-database files or an embedded SQL database."""

from __future__ import annotations

from orbit.config import Settings
from orbit.storage.database import Database, SqlBackend
from orbit.storage.filesystem import FileBackend
from orbit.storage.records import (
    FLAT_LAYOUT,
    RecordLog,
    RecordStore,
    Scope,
    StorageBackend,
    new_record_id,
)


async def open_backend(settings: Settings) -> StorageBackend:
    """Build the backend selected by ``settings.storage_backend``."""
    if settings.storage_backend == "sqlite":
        database = Database(settings)
        await database.connect()
        return SqlBackend(database)
    return FileBackend(settings.base_path)


__all__ = [
    "FLAT_LAYOUT",
    "Database",
    "FileBackend",
    "RecordLog",
    "RecordStore",
    "Scope",
    "SqlBackend",
    "StorageBackend",
    "new_record_id",
    "open_backend",
]
