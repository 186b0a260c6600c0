"""Schema creation for the SQLite key-value backend.

Each namespace (``members``, ``exclusions``) gets its own table so rows of
different entity types never share a key space.  A single ``flags`` table
holds global boolean switches such as the admission-enabled flag.
"""

from __future__ import annotations

import re
import sqlite3

_NAMESPACE_RE = re.compile(r"^[a-z][a-z0-9_]{0,31}$")

FLAGS_TABLE = "gate_flags"


def table_for(namespace: str) -> str:
    """Return the table name for ``namespace``.

    Raises:
        ValueError: If the namespace is not a short lowercase identifier.
            Table names are interpolated into SQL, so nothing else is allowed.
    """
    if not _NAMESPACE_RE.match(namespace):
        raise ValueError(f"invalid storage namespace {namespace!r}")
    return f"kv_{namespace}"


def ensure_schema(cursor: sqlite3.Cursor, namespace: str) -> None:
    """Create the namespace table and the shared flags table if missing."""
    table = table_for(namespace)
    cursor.execute(
        f"""
        CREATE TABLE IF NOT EXISTS {table} (
            key TEXT PRIMARY KEY,
            payload TEXT NOT NULL,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
        """  # nosec B608
    )
    cursor.execute(
        f"""
        CREATE TABLE IF NOT EXISTS {FLAGS_TABLE} (
            name TEXT PRIMARY KEY,
            value INTEGER NOT NULL,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
        """  # nosec B608
    )
