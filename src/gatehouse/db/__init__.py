"""Persistence collaborators for the gatehouse core.

The core only depends on the :class:`~gatehouse.db.store.KeyValueStore`
protocol.  Two reference backends ship with the package: an in-memory store
for tests and embedded use, and a SQLite store for single-host deployments.
"""

from gatehouse.db.errors import (
    StorageError,
    StorageOperationContext,
    StorageReadError,
    StorageWriteError,
)
from gatehouse.db.store import KeyValueStore, MemoryKeyValueStore, SqliteKeyValueStore

__all__ = [
    "KeyValueStore",
    "MemoryKeyValueStore",
    "SqliteKeyValueStore",
    "StorageError",
    "StorageOperationContext",
    "StorageReadError",
    "StorageWriteError",
]
