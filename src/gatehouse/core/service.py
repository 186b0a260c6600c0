"""Gatehouse service: wiring and the admission check.

:func:`build_gatehouse` assembles every component from a
:class:`~gatehouse.config.GatehouseConfig`; tests build :class:`Gatehouse`
directly from in-memory parts.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from uuid import UUID

import gatehouse.config
from gatehouse.audit.writer import AuditLog, FileAuditSink
from gatehouse.config import GatehouseConfig
from gatehouse.core.attempts import JoinAttemptTracker
from gatehouse.core.exclusions import ExclusionLedger
from gatehouse.core.linking import LinkCoordinator
from gatehouse.core.locks import IdentityLocks
from gatehouse.core.membership import MembershipStore
from gatehouse.core.results import (
    AdmissionDecision,
    Admitted,
    DeniedExcluded,
    DeniedNotMember,
    StoreOutcome,
)
from gatehouse.core.types import Actor, Clock, utc_now
from gatehouse.db.errors import StorageError
from gatehouse.db.store import KeyValueStore, MemoryKeyValueStore, SqliteKeyValueStore
from gatehouse.discord.client import DiscordClient, VerificationClient

logger = logging.getLogger(__name__)


class Gatehouse:
    """Facade over the admission-control components."""

    def __init__(
        self,
        membership: MembershipStore,
        exclusions: ExclusionLedger,
        attempts: JoinAttemptTracker,
        linking: LinkCoordinator,
        audit: AuditLog,
        *,
        owned_client: DiscordClient | None = None,
    ) -> None:
        self.membership = membership
        self.exclusions = exclusions
        self.attempts = attempts
        self.linking = linking
        self.audit = audit
        self._owned_client = owned_client

    def check_admission(
        self,
        identity: UUID,
        name: str,
        origin: str | None = None,
        message: str | None = None,
    ) -> AdmissionDecision:
        """Decide whether ``identity`` may enter.

        Exclusions apply even while membership is not enforced.  A denied
        non-member is recorded in the join-attempt tracker.
        """
        exclusion = self.exclusions.active_exclusion(identity)
        if exclusion is not None:
            return DeniedExcluded(exclusion)
        if not self.membership.is_enabled():
            return Admitted(membership_enforced=False)
        if self.membership.is_member(identity):
            return Admitted(membership_enforced=True)

        attempt = self.attempts.record(identity, name, origin=origin, message=message)
        logger.info("Denied non-member %s (%s), attempt %d", name, identity, attempt.count)
        return DeniedNotMember(attempt.count)

    def admit(
        self, identity: UUID, name: str, actor: Actor, reason: str | None = None
    ) -> StoreOutcome:
        """Admit a member and forget their join attempts."""
        outcome = self.membership.admit(identity, name, actor, reason)
        if outcome:
            self.attempts.remove(identity)
        return outcome

    def close(self) -> None:
        self.linking.shutdown()
        if self._owned_client is not None:
            self._owned_client.close()
        self.audit.close()


def _build_store(cfg: GatehouseConfig, namespace: str) -> KeyValueStore:
    if cfg.storage.backend == "memory":
        return MemoryKeyValueStore(namespace)
    return SqliteKeyValueStore(namespace, cfg.storage.absolute_path)


def build_gatehouse(
    cfg: GatehouseConfig | None = None,
    *,
    client: VerificationClient | None = None,
    clock: Clock = utc_now,
) -> Gatehouse:
    """Build a :class:`Gatehouse` from configuration.

    Args:
        cfg: Configuration; the module-level singleton when omitted.
        client: Verification client.  When omitted a :class:`DiscordClient`
            is built if linking is enabled and Discord is configured.
        clock: Time source shared by every component.

    Raises:
        StorageError: If stored members or exclusions cannot be read.  No
            gatehouse is built without them.
    """
    if cfg is None:
        cfg = gatehouse.config.config

    sink = FileAuditSink(cfg.audit.absolute_path) if cfg.audit.enabled else None
    audit = AuditLog(sink, clock=clock)
    audit.start()

    owned_client = None
    if client is None and cfg.linking_available:
        owned_client = DiscordClient(cfg.discord)
        client = owned_client
    elif client is None and cfg.linking.enabled:
        logger.warning("Linking is enabled but Discord is not configured; linking disabled")

    locks = IdentityLocks()
    try:
        membership = MembershipStore(_build_store(cfg, "members"), audit, locks, clock=clock)
        exclusions = ExclusionLedger(
            _build_store(cfg, "exclusions"),
            audit,
            locks,
            membership=membership,
            clock=clock,
            purge_after=timedelta(days=cfg.exclusions.purge_after_days),
        )
    except StorageError:
        if owned_client is not None:
            owned_client.close()
        audit.close()
        raise
    attempts = JoinAttemptTracker(cfg.attempts.max_entries, clock=clock)
    linking = LinkCoordinator(membership, audit, client, cfg.linking, clock=clock)

    logger.info(
        "Gatehouse ready (storage=%s, audit=%s, linking=%s)",
        cfg.storage.backend,
        "on" if audit.enabled else "off",
        "on" if linking.enabled else "off",
    )
    return Gatehouse(
        membership, exclusions, attempts, linking, audit, owned_client=owned_client
    )
