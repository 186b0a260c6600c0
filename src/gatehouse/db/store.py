"""Key-value persistence backends.

The core persists each entity type through a :class:`KeyValueStore`: a
minimal contract of ``load_all``/``upsert``/``delete`` plus an atomic
read/write for named global flags.  Records are plain JSON-serialisable
dicts; the core owns their shape (see :mod:`gatehouse.core.records`).

Atomicity:
    ``upsert`` and ``delete`` for a single key are atomic with respect to
    concurrent calls for the same key.  The memory backend uses one mutex;
    the SQLite backend relies on single-statement transactions.
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, NoReturn, Protocol

from gatehouse.db.connection import connection_scope
from gatehouse.db.errors import (
    StorageError,
    StorageOperationContext,
    StorageReadError,
    StorageWriteError,
)
from gatehouse.db.schema import FLAGS_TABLE, ensure_schema, table_for

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    """Persistence contract consumed by the membership and exclusion stores."""

    def load_all(self) -> dict[str, dict[str, Any]]:
        """Return every stored record keyed by its key."""
        ...

    def upsert(self, key: str, record: dict[str, Any]) -> bool:
        """Insert or replace the record for ``key``."""
        ...

    def delete(self, key: str) -> bool:
        """Remove ``key``; return ``True`` when a record was removed."""
        ...

    def read_flag(self, name: str, default: bool) -> bool:
        """Return the stored flag, or ``default`` when it was never written."""
        ...

    def write_flag(self, name: str, value: bool) -> bool:
        """Persist a global flag."""
        ...


def _raise_read_error(operation: str, exc: Exception, *, details: str | None = None) -> NoReturn:
    """Raise a typed read error while preserving chained cause."""
    if isinstance(exc, StorageError):
        raise exc
    raise StorageReadError(
        context=StorageOperationContext(operation=operation, details=details),
        cause=exc,
    ) from exc


def _raise_write_error(operation: str, exc: Exception, *, details: str | None = None) -> NoReturn:
    """Raise a typed write error while preserving chained cause."""
    if isinstance(exc, StorageError):
        raise exc
    raise StorageWriteError(
        context=StorageOperationContext(operation=operation, details=details),
        cause=exc,
    ) from exc


class MemoryKeyValueStore:
    """Process-local store.  Records are copied on the way in and out."""

    def __init__(self, namespace: str = "default") -> None:
        self.namespace = namespace
        self._records: dict[str, str] = {}
        self._flags: dict[str, bool] = {}
        self._lock = threading.Lock()

    def load_all(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            return {key: json.loads(payload) for key, payload in self._records.items()}

    def upsert(self, key: str, record: dict[str, Any]) -> bool:
        try:
            payload = json.dumps(record, sort_keys=True)
        except (TypeError, ValueError) as exc:
            _raise_write_error(f"{self.namespace}.upsert", exc, details=f"key={key!r}")
        with self._lock:
            self._records[key] = payload
        return True

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._records.pop(key, None) is not None

    def read_flag(self, name: str, default: bool) -> bool:
        with self._lock:
            return self._flags.get(name, default)

    def write_flag(self, name: str, value: bool) -> bool:
        with self._lock:
            self._flags[name] = bool(value)
        return True


class SqliteKeyValueStore:
    """SQLite-backed store: one table per namespace plus a shared flags table.

    Args:
        namespace: Entity namespace, e.g. ``"members"``.
        path: Database file.  Defaults to ``config.storage.absolute_path``.
    """

    def __init__(self, namespace: str, path: Path | None = None) -> None:
        self.namespace = namespace
        self._table = table_for(namespace)
        self._path = path
        try:
            with connection_scope(self._path, write=True) as conn:
                ensure_schema(conn.cursor(), namespace)
        except Exception as exc:
            _raise_write_error(f"{namespace}.ensure_schema", exc, details=str(path))

    def load_all(self) -> dict[str, dict[str, Any]]:
        try:
            with connection_scope(self._path) as conn:
                cursor = conn.cursor()
                cursor.execute(f"SELECT key, payload FROM {self._table}")  # nosec B608
                rows = cursor.fetchall()
        except Exception as exc:
            _raise_read_error(f"{self.namespace}.load_all", exc)

        records: dict[str, dict[str, Any]] = {}
        for key, payload in rows:
            try:
                records[key] = json.loads(payload)
            except json.JSONDecodeError:
                # One corrupt row must not hide the rest of the table.
                logger.error("Skipping unreadable %s row %r", self.namespace, key)
        return records

    def upsert(self, key: str, record: dict[str, Any]) -> bool:
        try:
            payload = json.dumps(record, sort_keys=True)
            with connection_scope(self._path, write=True) as conn:
                conn.execute(
                    f"""
                    INSERT INTO {self._table} (key, payload) VALUES (?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        payload = excluded.payload,
                        updated_at = CURRENT_TIMESTAMP
                    """,  # nosec B608
                    (key, payload),
                )
            return True
        except Exception as exc:
            _raise_write_error(f"{self.namespace}.upsert", exc, details=f"key={key!r}")

    def delete(self, key: str) -> bool:
        try:
            with connection_scope(self._path, write=True) as conn:
                cursor = conn.execute(
                    f"DELETE FROM {self._table} WHERE key = ?", (key,)  # nosec B608
                )
                return cursor.rowcount > 0
        except Exception as exc:
            _raise_write_error(f"{self.namespace}.delete", exc, details=f"key={key!r}")

    def read_flag(self, name: str, default: bool) -> bool:
        try:
            with connection_scope(self._path) as conn:
                cursor = conn.cursor()
                cursor.execute(
                    f"SELECT value FROM {FLAGS_TABLE} WHERE name = ?", (name,)  # nosec B608
                )
                row = cursor.fetchone()
        except Exception as exc:
            _raise_read_error(f"{self.namespace}.read_flag", exc, details=f"name={name!r}")
        return bool(row[0]) if row else default

    def write_flag(self, name: str, value: bool) -> bool:
        try:
            with connection_scope(self._path, write=True) as conn:
                conn.execute(
                    f"""
                    INSERT INTO {FLAGS_TABLE} (name, value) VALUES (?, ?)
                    ON CONFLICT(name) DO UPDATE SET
                        value = excluded.value,
                        updated_at = CURRENT_TIMESTAMP
                    """,  # nosec B608
                    (name, int(bool(value))),
                )
            return True
        except Exception as exc:
            _raise_write_error(f"{self.namespace}.write_flag", exc, details=f"name={name!r}")
