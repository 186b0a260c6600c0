"""Exclusion Ledger: time-bounded and permanent bans.

Activity is computed lazily: an entry is in force while it is ``active`` and
its expiry (if any) lies in the future.  Nothing runs on a timer; an expired
entry simply stops matching and :meth:`ExclusionLedger.purge_expired` removes
old rows from storage when the host calls it.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timedelta
from uuid import UUID

from gatehouse.audit.writer import EXCLUSION_ADD, EXCLUSION_REMOVE, AuditLog
from gatehouse.core.locks import IdentityLocks
from gatehouse.core.membership import MembershipStore
from gatehouse.core.records import exclusion_from_record, exclusion_to_record
from gatehouse.core.results import (
    AlreadyExcluded,
    Excluded,
    ExclusionResult,
    InvalidInput,
    StorageFailure,
    StoreOutcome,
)
from gatehouse.core.types import Actor, Clock, ExclusionEntry, clean_name, utc_now
from gatehouse.db.errors import StorageError
from gatehouse.db.store import KeyValueStore

logger = logging.getLogger(__name__)


def describe_duration(duration: timedelta) -> str:
    """Render a duration as days, hours and minutes.

    Seconds are dropped.  Minutes are shown when non-zero or when nothing
    else would be shown, so ``timedelta(0)`` renders as ``"0 minutes"``.

    >>> describe_duration(timedelta(days=1, hours=2))
    '1 day 2 hours'
    """
    total_minutes = int(duration.total_seconds()) // 60
    days, rest = divmod(total_minutes, 24 * 60)
    hours, minutes = divmod(rest, 60)

    parts = []
    if days:
        parts.append(_plural(days, "day"))
    if hours:
        parts.append(_plural(hours, "hour"))
    if minutes or not parts:
        parts.append(_plural(minutes, "minute"))
    return " ".join(parts)


def _plural(count: int, unit: str) -> str:
    return f"{count} {unit}" if count == 1 else f"{count} {unit}s"


class ExclusionLedger:
    """Owner of every :class:`ExclusionEntry`, keyed by identity.

    Args:
        store: Persistence collaborator for exclusion records.
        audit: Audit log.
        locks: Shared per-identity lock table.  Pass the membership store's
            table so a cascading revoke runs in the same section.
        membership: Target of ``also_revoke_membership`` cascades.
        clock: Time source.
        purge_after: Retention for ended entries before ``purge_expired``
            deletes them.
    """

    def __init__(
        self,
        store: KeyValueStore,
        audit: AuditLog,
        locks: IdentityLocks | None = None,
        *,
        membership: MembershipStore | None = None,
        clock: Clock = utc_now,
        purge_after: timedelta = timedelta(days=30),
    ) -> None:
        self._store = store
        self._audit = audit
        self._locks = locks if locks is not None else IdentityLocks()
        self._membership = membership
        self._clock = clock
        self._purge_after = purge_after
        self._entries: dict[UUID, ExclusionEntry] = {}
        try:
            self._load()
        except StorageError:
            logger.critical("Could not load exclusion records; refusing to start without them")
            raise

    def reload(self) -> bool:
        """Re-read storage.  ``False`` (cache kept) when storage cannot be read."""
        try:
            self._load()
        except StorageError:
            logger.warning("Could not reload exclusion records", exc_info=True)
            return False
        return True

    def _load(self) -> None:
        records = self._store.load_all()
        entries: dict[UUID, ExclusionEntry] = {}
        for key, record in records.items():
            try:
                entry = exclusion_from_record(record)
            except (KeyError, TypeError, ValueError):
                logger.error("Skipping malformed exclusion record %r", key)
                continue
            entries[entry.identity] = entry
        self._entries = entries
        logger.info("Loaded %d exclusion records", len(entries))

    # ── Reads ─────────────────────────────────────────────────────────────────

    def active_exclusion(self, identity: UUID) -> ExclusionEntry | None:
        """The entry currently in force for ``identity``, if any."""
        entry = self._entries.get(identity)
        if entry is not None and entry.is_in_force(self._clock()):
            return entry
        return None

    def is_excluded(self, identity: UUID) -> bool:
        return self.active_exclusion(identity) is not None

    def list_active(self) -> list[ExclusionEntry]:
        """Entries in force, oldest first."""
        now = self._clock()
        active = [entry for entry in list(self._entries.values()) if entry.is_in_force(now)]
        return sorted(active, key=lambda entry: entry.issued_at)

    def remaining(self, entry: ExclusionEntry) -> timedelta | None:
        return entry.remaining(self._clock())

    # ── Mutations ─────────────────────────────────────────────────────────────

    def exclude(
        self,
        identity: UUID,
        name: str,
        actor: Actor,
        duration: timedelta | None,
        reason: str,
        also_revoke_membership: bool = False,
    ) -> ExclusionResult:
        """Issue a ban.  ``duration=None`` makes it permanent.

        An entry already in force is returned as :class:`AlreadyExcluded` and
        is never extended or overwritten.  A blank name or a non-positive
        duration yields :class:`InvalidInput` without touching state.
        """
        cleaned = clean_name(name)
        if cleaned is None:
            return InvalidInput("name must not be blank")
        if duration is not None and duration <= timedelta(0):
            return InvalidInput("duration must be positive")
        name = cleaned

        with self._locks.hold(identity):
            now = self._clock()
            existing = self._entries.get(identity)
            if existing is not None and existing.is_in_force(now):
                return AlreadyExcluded(existing)

            entry = ExclusionEntry(
                identity=identity,
                name=name,
                issued_by=actor,
                issued_at=now,
                expires_at=now + duration if duration is not None else None,
                reason=reason or "",
            )
            if not self._persist(entry, "exclude"):
                return StorageFailure()
            self._entries[identity] = entry

            length = describe_duration(duration) if duration is not None else "permanent"
            self._audit.append(
                EXCLUSION_ADD,
                identity,
                actor,
                f"Name: {name}, Duration: {length}, Reason: {entry.reason}",
            )

            if also_revoke_membership and self._membership is not None:
                outcome = self._membership.revoke(identity, actor)
                if outcome is StoreOutcome.STORAGE_FAILURE:
                    logger.warning("Exclusion of %s issued but membership revoke failed", identity)
        return Excluded(entry)

    def lift(self, identity: UUID, actor: Actor) -> StoreOutcome:
        """End the entry in force early.  ``NOT_FOUND`` when none is."""
        with self._locks.hold(identity):
            entry = self._entries.get(identity)
            if entry is None or not entry.is_in_force(self._clock()):
                return StoreOutcome.NOT_FOUND

            lifted = replace(entry, active=False)
            if not self._persist(lifted, "lift"):
                return StoreOutcome.STORAGE_FAILURE
            self._entries[identity] = lifted
            self._audit.append(EXCLUSION_REMOVE, identity, actor, f"Name: {entry.name}")
        return StoreOutcome.OK

    def purge_expired(self) -> int:
        """Delete ended entries older than the retention window.

        Returns the number of rows removed.
        """
        cutoff = self._clock() - self._purge_after
        purged = 0
        for identity in list(self._entries):
            with self._locks.hold(identity):
                entry = self._entries.get(identity)
                now = self._clock()
                if entry is None or entry.is_in_force(now):
                    continue
                if _ended_at(entry, now) > cutoff:
                    continue
                try:
                    self._store.delete(str(identity))
                except StorageError:
                    logger.warning("Failed to purge exclusion %s", identity, exc_info=True)
                    continue
                del self._entries[identity]
                purged += 1
        if purged:
            logger.info("Purged %d ended exclusion records", purged)
        return purged

    def _persist(self, entry: ExclusionEntry, operation: str) -> bool:
        try:
            self._store.upsert(str(entry.identity), exclusion_to_record(entry))
        except StorageError:
            logger.warning("Exclusion %s failed for %s", operation, entry.identity, exc_info=True)
            return False
        return True


def _ended_at(entry: ExclusionEntry, now: datetime) -> datetime:
    # Lifted entries carry no end time of their own; use issuance.
    if entry.expires_at is not None and entry.expires_at <= now:
        return entry.expires_at
    return entry.issued_at
