"""Typed storage exceptions for the DB package.

Backends raise these to signal infrastructure failures (SQLite connection or
query errors, unserialisable payloads) without collapsing them into boolean
return values.

Design intent:
    - Domain outcomes like "key not present" stay ``False``/``None``.
    - Infrastructure failures raise typed exceptions so the core can log the
      full detail and surface a generic ``STORAGE_FAILURE`` outcome.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class StorageOperationContext:
    """Structured operation metadata carried by storage exceptions.

    Attributes:
        operation: Stable operation identifier (for example
            ``"members.upsert"``).
        details: Optional human-readable context for logs and debugging.
    """

    operation: str
    details: str | None = None


class StorageError(RuntimeError):
    """Base exception for storage-layer failures."""


class StorageOperationError(StorageError):
    """Base exception for backend operation failures.

    Args:
        context: Structured operation metadata.
        cause: Optional underlying exception.
    """

    def __init__(
        self,
        *,
        context: StorageOperationContext,
        cause: Exception | None = None,
    ) -> None:
        message = context.operation
        if context.details:
            message = f"{message}: {context.details}"
        super().__init__(message)
        self.context = context
        self.cause = cause


class StorageReadError(StorageOperationError):
    """Backend read/query failure."""


class StorageWriteError(StorageOperationError):
    """Backend mutation/transaction failure."""
