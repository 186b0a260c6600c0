"""Per-identity exclusive sections.

Every mutating operation on an identity (admit, revoke, link, exclude,
confirm, reset) runs inside that identity's section.  One table is shared by
all components so, for example, an exclusion that cascades into a revoke and
a concurrent link confirmation for the same player are ordered, while
unrelated identities never contend.

Locks are re-entrant: the exclusion ledger holds the section while calling
into the membership store for the same identity.  The table grows with the
number of distinct identities seen, which is bounded by the member and
exclusion counts in practice.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from uuid import UUID


class IdentityLocks:
    """Lazily created ``RLock`` per identity, guarded by a table mutex."""

    def __init__(self) -> None:
        self._locks: dict[UUID, threading.RLock] = {}
        self._locks_mutex = threading.Lock()

    def _get_lock(self, identity: UUID) -> threading.RLock:
        """Return the per-identity lock, creating it on first use."""
        with self._locks_mutex:
            lock = self._locks.get(identity)
            if lock is None:
                lock = threading.RLock()
                self._locks[identity] = lock
            return lock

    @contextmanager
    def hold(self, identity: UUID) -> Iterator[None]:
        """Hold the exclusive section for ``identity``."""
        lock = self._get_lock(identity)
        with lock:
            yield

    def __len__(self) -> int:
        with self._locks_mutex:
            return len(self._locks)
