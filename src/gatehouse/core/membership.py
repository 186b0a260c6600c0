"""Membership Store: admitted identities and the global admission flag.

The store keeps every :class:`MemberEntry` in an owned dict cache that is
loaded from the persistence collaborator at construction; a read failure
there propagates so a caller never runs with an empty member set.  Reads
(``is_member``, ``get``, ``is_enabled``) never take a lock; mutations take
the shared per-identity section, write storage first and update the cache
only once the write succeeded, so a storage failure leaves the cache unchanged.

Verified external accounts are unique across members.  The check and the
commit of a verified link happen under ``_link_index_lock`` so two identities
racing for the same account cannot both win.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from uuid import UUID

from gatehouse.audit.writer import (
    LINK_CLEAR,
    LINK_SET,
    MEMBER_ADD,
    MEMBER_REMOVE,
    MEMBERSHIP_TOGGLE,
    AuditLog,
)
from gatehouse.core.locks import IdentityLocks
from gatehouse.core.records import member_from_record, member_to_record
from gatehouse.core.results import StoreOutcome
from gatehouse.core.types import Actor, Clock, ExternalLink, MemberEntry, clean_name, utc_now
from gatehouse.db.errors import StorageError
from gatehouse.db.store import KeyValueStore

logger = logging.getLogger(__name__)

ENABLED_FLAG = "membership_enabled"


class MembershipStore:
    """Owner of the member set and the enabled/disabled admission flag.

    Args:
        store: Persistence collaborator for member records.
        audit: Audit log receiving one event per successful mutation.
        locks: Shared per-identity lock table.  A private one is created when
            omitted.
        clock: Time source for admission timestamps.
        default_enabled: Flag value used when storage has never recorded one.
    """

    def __init__(
        self,
        store: KeyValueStore,
        audit: AuditLog,
        locks: IdentityLocks | None = None,
        *,
        clock: Clock = utc_now,
        default_enabled: bool = False,
    ) -> None:
        self._store = store
        self._audit = audit
        self._locks = locks if locks is not None else IdentityLocks()
        self._clock = clock
        self._default_enabled = default_enabled
        self._members: dict[UUID, MemberEntry] = {}
        self._enabled = default_enabled
        self._flag_lock = threading.Lock()
        self._link_index_lock = threading.Lock()
        try:
            self._load()
        except StorageError:
            logger.critical("Could not load membership records; refusing to start without them")
            raise

    @property
    def locks(self) -> IdentityLocks:
        return self._locks

    # ── Loading ───────────────────────────────────────────────────────────────

    def reload(self) -> bool:
        """Replace the cache with the collaborator's contents.

        Returns ``False`` (and keeps the current cache) when storage cannot be
        read.  Rows that fail to decode are skipped with an error log.  At
        construction the same failure propagates instead.
        """
        try:
            self._load()
        except StorageError:
            logger.warning("Could not reload membership records", exc_info=True)
            return False
        return True

    def _load(self) -> None:
        records = self._store.load_all()
        enabled = self._store.read_flag(ENABLED_FLAG, self._default_enabled)
        members: dict[UUID, MemberEntry] = {}
        for key, record in records.items():
            try:
                entry = member_from_record(record)
            except (KeyError, TypeError, ValueError):
                logger.error("Skipping malformed member record %r", key)
                continue
            members[entry.identity] = entry

        self._members = members
        self._enabled = enabled
        logger.info("Loaded %d members (admission %s)", len(members), _flag_word(enabled))

    # ── Reads ─────────────────────────────────────────────────────────────────

    def is_member(self, identity: UUID) -> bool:
        return identity in self._members

    def get(self, identity: UUID) -> MemberEntry | None:
        return self._members.get(identity)

    def list_all(self) -> list[MemberEntry]:
        """All members, oldest admission first."""
        return sorted(self._members.values(), key=lambda entry: entry.added_at)

    def count(self) -> int:
        return len(self._members)

    def is_enabled(self) -> bool:
        return self._enabled

    def find_verified_owner(self, account_id: str) -> UUID | None:
        """Return the member holding ``account_id`` as a verified link."""
        for entry in list(self._members.values()):
            if entry.has_verified_link and entry.link.account_id == account_id:
                return entry.identity
        return None

    # ── Mutations ─────────────────────────────────────────────────────────────

    def admit(
        self,
        identity: UUID,
        name: str,
        actor: Actor,
        reason: str | None = None,
    ) -> StoreOutcome:
        """Add ``identity`` to the member set.

        Returns ``ALREADY_EXISTS`` without mutation for an existing member and
        ``INVALID_INPUT`` for a blank name.
        """
        cleaned = clean_name(name)
        if cleaned is None:
            return StoreOutcome.INVALID_INPUT
        name = cleaned
        with self._locks.hold(identity):
            if identity in self._members:
                return StoreOutcome.ALREADY_EXISTS

            entry = MemberEntry(
                identity=identity,
                name=name,
                added_by=actor,
                added_at=self._clock(),
                reason=reason,
            )
            if not self._persist(entry, "admit"):
                return StoreOutcome.STORAGE_FAILURE
            self._members[identity] = entry

            details = f"Name: {name}"
            if reason:
                details += f", Reason: {reason}"
            self._audit.append(MEMBER_ADD, identity, actor, details)
        return StoreOutcome.OK

    def revoke(self, identity: UUID, actor: Actor) -> StoreOutcome:
        """Remove ``identity``; ``NOT_FOUND`` when it was never a member."""
        with self._locks.hold(identity):
            entry = self._members.get(identity)
            if entry is None:
                return StoreOutcome.NOT_FOUND

            try:
                self._store.delete(str(identity))
            except StorageError:
                logger.warning("Failed to delete member %s", identity, exc_info=True)
                return StoreOutcome.STORAGE_FAILURE
            del self._members[identity]

            self._audit.append(MEMBER_REMOVE, identity, actor, f"Name: {entry.name}")
        return StoreOutcome.OK

    def set_enabled(self, enabled: bool, actor: Actor) -> StoreOutcome:
        """Flip the global admission flag."""
        enabled = bool(enabled)
        with self._flag_lock:
            try:
                self._store.write_flag(ENABLED_FLAG, enabled)
            except StorageError:
                logger.warning("Failed to persist admission flag", exc_info=True)
                return StoreOutcome.STORAGE_FAILURE
            self._enabled = enabled
            self._audit.append(MEMBERSHIP_TOGGLE, None, actor, _flag_word(enabled).capitalize())
        logger.info("Admission %s by %s", _flag_word(enabled), actor)
        return StoreOutcome.OK

    def set_link(self, identity: UUID, link: ExternalLink, actor: Actor) -> StoreOutcome:
        """Attach ``link`` to a member, replacing any previous link.

        A verified link whose account is already verified on another member
        yields ``ACCOUNT_IN_USE``.
        """
        with self._locks.hold(identity):
            entry = self._members.get(identity)
            if entry is None:
                return StoreOutcome.NOT_FOUND

            with self._link_index_lock:
                if link.verified:
                    owner = self.find_verified_owner(link.account_id)
                    if owner is not None and owner != identity:
                        return StoreOutcome.ACCOUNT_IN_USE

                updated = replace(entry, link=link)
                if not self._persist(updated, "set_link"):
                    return StoreOutcome.STORAGE_FAILURE
                self._members[identity] = updated

            state = "verified" if link.verified else "unverified"
            self._audit.append(
                LINK_SET,
                identity,
                actor,
                f"Account: {link.account_name} ({link.account_id}), {state}",
            )
        return StoreOutcome.OK

    def clear_link(self, identity: UUID, actor: Actor) -> StoreOutcome:
        """Detach the member's link.  ``NOT_FOUND`` when there is nothing to clear."""
        with self._locks.hold(identity):
            entry = self._members.get(identity)
            if entry is None or entry.link is None:
                return StoreOutcome.NOT_FOUND

            updated = replace(entry, link=None)
            with self._link_index_lock:
                if not self._persist(updated, "clear_link"):
                    return StoreOutcome.STORAGE_FAILURE
                self._members[identity] = updated

            self._audit.append(
                LINK_CLEAR,
                identity,
                actor,
                f"Account: {entry.link.account_name} ({entry.link.account_id})",
            )
        return StoreOutcome.OK

    def _persist(self, entry: MemberEntry, operation: str) -> bool:
        try:
            self._store.upsert(str(entry.identity), member_to_record(entry))
        except StorageError:
            logger.warning("Member %s failed for %s", operation, entry.identity, exc_info=True)
            return False
        return True


def _flag_word(enabled: bool) -> str:
    return "enabled" if enabled else "disabled"
