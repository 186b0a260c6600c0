"""Join-Attempt Tracker: repeated admission attempts by non-members.

Purely in-memory and bounded.  Operators use it to see who keeps knocking;
an attempt is removed once the identity is admitted.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from uuid import UUID

from gatehouse.core.types import Clock, JoinAttempt, utc_now

logger = logging.getLogger(__name__)


class JoinAttemptTracker:
    """Bounded map of identity to :class:`JoinAttempt`.

    When more than ``max_entries`` identities are tracked, the entries with
    the oldest ``last_seen`` are evicted.
    """

    def __init__(self, max_entries: int = 200, *, clock: Clock = utc_now) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._max_entries = max_entries
        self._clock = clock
        self._attempts: dict[UUID, JoinAttempt] = {}
        self._lock = threading.Lock()

    def record(
        self,
        identity: UUID,
        name: str,
        origin: str | None = None,
        message: str | None = None,
    ) -> JoinAttempt:
        """Count one more attempt and return the updated snapshot.

        A ``None`` origin keeps the last known one.
        """
        now = self._clock()
        with self._lock:
            current = self._attempts.get(identity)
            if current is None:
                attempt = JoinAttempt(
                    identity=identity,
                    name=name,
                    first_seen=now,
                    last_seen=now,
                    count=1,
                    origin=origin,
                    message=message,
                )
            else:
                attempt = replace(
                    current,
                    name=name,
                    last_seen=now,
                    count=current.count + 1,
                    origin=origin if origin is not None else current.origin,
                    message=message,
                )
            self._attempts[identity] = attempt
            self._evict_overflow(keep=identity)
        return attempt

    def remove(self, identity: UUID) -> bool:
        with self._lock:
            return self._attempts.pop(identity, None) is not None

    def get(self, identity: UUID) -> JoinAttempt | None:
        with self._lock:
            return self._attempts.get(identity)

    def list_all(self) -> list[JoinAttempt]:
        """Most recent attempt first."""
        with self._lock:
            attempts = list(self._attempts.values())
        return sorted(attempts, key=lambda attempt: attempt.last_seen, reverse=True)

    def clear(self) -> int:
        with self._lock:
            count = len(self._attempts)
            self._attempts.clear()
        return count

    def __len__(self) -> int:
        with self._lock:
            return len(self._attempts)

    def _evict_overflow(self, keep: UUID) -> None:
        overflow = len(self._attempts) - self._max_entries
        if overflow <= 0:
            return
        candidates = sorted(
            (attempt for attempt in self._attempts.values() if attempt.identity != keep),
            key=lambda attempt: attempt.last_seen,
        )
        for attempt in candidates[:overflow]:
            del self._attempts[attempt.identity]
        logger.debug("Evicted %d join attempts over the %d cap", overflow, self._max_entries)
