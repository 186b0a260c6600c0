"""Identity-Link Coordinator: prove ownership of an external account.

Workflow per identity::

    NoRequest --request_link--> Pending --confirm_link--> Verified
                                   |--> Expired            (TTL passed)
                                   |--> AttemptsExhausted  (budget spent)
                                   '--> Reset              (reset_pending / unlink)

Every terminal state returns the identity to ``NoRequest``.

``request_link`` performs its local checks inside the identity's exclusive
section, leaves it for the slow external calls (lookup, community and role
checks, direct message) and re-enters it to store the request.  Callers on a
latency-sensitive path use :meth:`LinkCoordinator.submit_request_link`, which
runs the whole operation on the coordinator's worker pool.

Expiry is a wall-clock comparison at confirmation time; no timers run.
"""

from __future__ import annotations

import logging
import math
import secrets
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime, timedelta
from uuid import UUID

from gatehouse.audit.writer import LINK_ATTEMPTS_EXHAUSTED, AuditLog
from gatehouse.config import LinkingSettings
from gatehouse.core.membership import MembershipStore
from gatehouse.core.results import (
    AlreadyLinked,
    AttemptsExhausted,
    CodeSent,
    DeliveryFailed,
    Expired,
    ExternalAccountInUse,
    ExternalServiceError,
    ExternalUserNotFound,
    InvalidCode,
    InvalidInput,
    Linked,
    LinkConfirmResult,
    LinkHealth,
    LinkRequestResult,
    MissingRequiredRole,
    NoPendingRequest,
    NotAMember,
    NotInRequiredCommunity,
    RequestAlreadyPending,
    ServiceDisabled,
    StorageFailure,
    StoreOutcome,
)
from gatehouse.core.types import (
    Actor,
    Clock,
    ExternalLink,
    VerificationRequest,
    clean_name,
    utc_now,
)
from gatehouse.discord.client import ExternalAccount, ExternalServiceUnavailable, VerificationClient

logger = logging.getLogger(__name__)

_UNAVAILABLE = "external service unavailable"


class LinkCoordinator:
    """Owner of every :class:`VerificationRequest` and of the link cooldowns.

    Args:
        membership: Store that receives the verified link.  Its lock table is
            shared so link state and member state for one identity are
            serialized together.
        audit: Audit log.
        client: External verification client.  ``None`` disables linking.
        settings: Linking section of the configuration.
        clock: Time source.
        executor: Worker pool for the ``submit_*`` methods.  One is created
            (and owned) when omitted.
    """

    def __init__(
        self,
        membership: MembershipStore,
        audit: AuditLog,
        client: VerificationClient | None,
        settings: LinkingSettings | None = None,
        *,
        clock: Clock = utc_now,
        executor: ThreadPoolExecutor | None = None,
    ) -> None:
        self._membership = membership
        self._locks = membership.locks
        self._audit = audit
        self._client = client
        self._settings = settings if settings is not None else LinkingSettings()
        self._clock = clock
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max(1, self._settings.worker_threads),
            thread_name_prefix="gatehouse-link",
        )
        self._pending: dict[UUID, VerificationRequest] = {}
        self._cooldowns: dict[UUID, datetime] = {}

    @property
    def enabled(self) -> bool:
        return self._client is not None and self._settings.enabled

    # ── Reads ─────────────────────────────────────────────────────────────────

    def pending(self, identity: UUID) -> VerificationRequest | None:
        return self._pending.get(identity)

    def cooldown_remaining(self, identity: UUID) -> int:
        """Whole seconds until ``identity`` may request another code."""
        started = self._cooldowns.get(identity)
        if started is None:
            return 0
        window = timedelta(seconds=self._settings.cooldown_seconds)
        left = (started + window - self._clock()).total_seconds()
        return max(0, math.ceil(left))

    # ── Request ───────────────────────────────────────────────────────────────

    def request_link(
        self, identity: UUID, name: str, claimed_external_name: str
    ) -> LinkRequestResult:
        """Start verification of ``claimed_external_name`` for a member.

        Blocks on the external service; see :meth:`submit_request_link`.
        """
        if not self.enabled:
            return ServiceDisabled()
        claimed = clean_name(claimed_external_name)
        if claimed is None:
            return InvalidInput("external account name must not be blank")

        with self._locks.hold(identity):
            blocked = self._local_checks(identity)
            if blocked is not None:
                return blocked
            retry_after = self.cooldown_remaining(identity)
            if retry_after > 0:
                return RequestAlreadyPending(retry_after)
            self._cooldowns[identity] = self._clock()

        try:
            account = self._verify_account(claimed)
        except ExternalServiceUnavailable:
            logger.warning("Link lookup for %s (%r) failed", identity, claimed, exc_info=True)
            return ExternalServiceError(_UNAVAILABLE)
        if not isinstance(account, ExternalAccount):
            return account

        owner = self._membership.find_verified_owner(account.account_id)
        if owner is not None and owner != identity:
            return ExternalAccountInUse()

        with self._locks.hold(identity):
            blocked = self._local_checks(identity)
            if blocked is not None:
                return blocked
            now = self._clock()
            request = VerificationRequest(
                identity=identity,
                account_id=account.account_id,
                account_name=account.name,
                code=self._new_code(),
                issued_at=now,
                expires_at=now + timedelta(seconds=self._settings.code_ttl_seconds),
                remaining_attempts=self._settings.max_attempts,
            )
            if identity in self._pending:
                logger.debug("Superseding pending link request for %s", identity)
            self._pending[identity] = request

        text = self._settings.message_template.format(
            code=request.code,
            minutes=max(1, self._settings.code_ttl_seconds // 60),
            name=name,
        )
        try:
            delivery = self._client.send_direct_message(account.account_id, text)
        except ExternalServiceUnavailable:
            logger.warning("Code delivery to %s failed", account.account_id, exc_info=True)
            self._discard(identity, request)
            return ExternalServiceError(_UNAVAILABLE)
        if not delivery.delivered:
            self._discard(identity, request)
            return DeliveryFailed(delivery.reason or "message was not delivered")

        logger.info("Sent link code to %s (%s) for %s", account.name, account.account_id, identity)
        return CodeSent(account.account_id, account.name, request.expires_at)

    def submit_request_link(
        self, identity: UUID, name: str, claimed_external_name: str
    ) -> Future[LinkRequestResult]:
        """Run :meth:`request_link` on the worker pool."""
        return self._executor.submit(self.request_link, identity, name, claimed_external_name)

    # ── Confirm / reset ───────────────────────────────────────────────────────

    def confirm_link(self, identity: UUID, code: str) -> LinkConfirmResult:
        """Check ``code`` against the pending request of ``identity``."""
        with self._locks.hold(identity):
            request = self._pending.get(identity)
            if request is None:
                return NoPendingRequest()

            now = self._clock()
            if request.is_expired(now):
                del self._pending[identity]
                return Expired()

            if not secrets.compare_digest(code.strip().encode(), request.code.encode()):
                remaining = request.remaining_attempts - 1
                if remaining <= 0:
                    del self._pending[identity]
                    self._audit.append(
                        LINK_ATTEMPTS_EXHAUSTED,
                        identity,
                        Actor.player(identity),
                        f"Account: {request.account_name} ({request.account_id})",
                    )
                    return AttemptsExhausted()
                self._pending[identity] = replace(request, remaining_attempts=remaining)
                return InvalidCode(remaining)

            link = ExternalLink(
                account_id=request.account_id,
                account_name=request.account_name,
                verified=True,
                linked_at=now,
                verified_at=now,
            )
            outcome = self._membership.set_link(identity, link, Actor.player(identity))
            if outcome is StoreOutcome.STORAGE_FAILURE:
                # Request stays pending so the player can retry the same code.
                return StorageFailure()
            del self._pending[identity]

        if outcome is StoreOutcome.NOT_FOUND:
            return NotAMember()
        if outcome is StoreOutcome.ACCOUNT_IN_USE:
            return ExternalAccountInUse()
        logger.info("Linked %s to %s (%s)", identity, link.account_name, link.account_id)
        return Linked(link)

    def reset_pending(self, identity: UUID) -> bool:
        """Drop any pending request.  Returns whether one existed."""
        with self._locks.hold(identity):
            return self._pending.pop(identity, None) is not None

    def unlink(self, identity: UUID, actor: Actor) -> StoreOutcome:
        """Clear the member's link and any pending request."""
        with self._locks.hold(identity):
            self._pending.pop(identity, None)
            return self._membership.clear_link(identity, actor)

    def purge_expired(self) -> int:
        """Drop pending requests whose TTL has passed.  Returns how many.

        Cooldown entries whose window has elapsed are dropped as well.
        """
        purged = 0
        for identity in list(self._pending):
            with self._locks.hold(identity):
                request = self._pending.get(identity)
                if request is not None and request.is_expired(self._clock()):
                    del self._pending[identity]
                    purged += 1
        for identity in list(self._cooldowns):
            with self._locks.hold(identity):
                if identity in self._cooldowns and self.cooldown_remaining(identity) == 0:
                    del self._cooldowns[identity]
        return purged

    # ── Re-validation ─────────────────────────────────────────────────────────

    def evaluate_link(self, identity: UUID) -> LinkHealth:
        """Re-check that a verified link still satisfies community rules."""
        if not self.enabled:
            return LinkHealth.SERVICE_DISABLED
        entry = self._membership.get(identity)
        if entry is None or not entry.has_verified_link:
            return LinkHealth.NOT_LINKED

        account_id = entry.link.account_id
        try:
            if not self._client.is_member(account_id):
                return LinkHealth.NOT_IN_COMMUNITY
            if self._role_required and not self._client.has_role(
                account_id, self._settings.required_role_id
            ):
                return LinkHealth.MISSING_ROLE
        except ExternalServiceUnavailable as exc:
            logger.warning("Link re-validation for %s failed: %s", identity, exc)
            return LinkHealth.API_ERROR
        return LinkHealth.VALID

    def submit_evaluate_link(self, identity: UUID) -> Future[LinkHealth]:
        return self._executor.submit(self.evaluate_link, identity)

    def shutdown(self, wait: bool = True) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=wait, cancel_futures=True)

    # ── Internals ─────────────────────────────────────────────────────────────

    @property
    def _role_required(self) -> bool:
        return self._settings.require_role and bool(self._settings.required_role_id)

    def _local_checks(self, identity: UUID) -> NotAMember | AlreadyLinked | None:
        entry = self._membership.get(identity)
        if entry is None:
            return NotAMember()
        if entry.has_verified_link:
            return AlreadyLinked()
        return None

    def _verify_account(
        self, claimed: str
    ) -> ExternalAccount | ExternalUserNotFound | NotInRequiredCommunity | MissingRequiredRole:
        account = self._client.find_account_by_name(claimed)
        if account is None:
            return ExternalUserNotFound()
        if not self._client.is_member(account.account_id):
            return NotInRequiredCommunity()
        if self._role_required and not self._client.has_role(
            account.account_id, self._settings.required_role_id
        ):
            return MissingRequiredRole()
        return account

    def _new_code(self) -> str:
        length = max(4, self._settings.code_length)
        return f"{secrets.randbelow(10**length):0{length}d}"

    def _discard(self, identity: UUID, request: VerificationRequest) -> None:
        with self._locks.hold(identity):
            if self._pending.get(identity) is request:
                del self._pending[identity]
