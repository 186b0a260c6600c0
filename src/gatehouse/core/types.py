"""Immutable entity types for the admission-control core.

These frozen dataclasses are the values that flow between the stores, the
link coordinator, the admission check and the audit log.  They are safe to
share across threads: every "mutation" produces a new instance via
:func:`dataclasses.replace`.

Timestamps are always timezone-aware UTC datetimes.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from uuid import UUID

# A clock returns "now".  Every component takes one so tests can move time.
Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Default clock: current wall-clock time in UTC."""
    return datetime.now(UTC)


def clean_name(name: str) -> str | None:
    """Strip a display name; ``None`` when nothing is left."""
    if not isinstance(name, str):
        return None
    return name.strip() or None


# ============================================================================
# ACTORS
# ============================================================================


class ActorKind(Enum):
    """Who performed a mutation."""

    PLAYER = "player"
    CONSOLE = "console"  # console / unattended operator
    SYSTEM = "system"  # internal process, e.g. global toggles


@dataclass(frozen=True)
class Actor:
    """Tagged actor variant recorded on every mutation.

    Build player actors with :meth:`player`; use the :data:`CONSOLE_ACTOR`
    and :data:`SYSTEM_ACTOR` constants for the two sentinels.  A zero UUID is
    never used to mean "console".
    """

    kind: ActorKind
    identity: UUID | None = None

    def __post_init__(self) -> None:
        if (self.kind is ActorKind.PLAYER) != (self.identity is not None):
            raise ValueError("player actors carry an identity; sentinel actors do not")

    @classmethod
    def player(cls, identity: UUID) -> Actor:
        return cls(ActorKind.PLAYER, identity)

    @property
    def label(self) -> str:
        """Stable serialised form: the player UUID or the sentinel name."""
        if self.identity is not None:
            return str(self.identity)
        return self.kind.value

    @classmethod
    def parse(cls, label: str) -> Actor:
        """Inverse of :attr:`label`."""
        if label == ActorKind.CONSOLE.value:
            return CONSOLE_ACTOR
        if label == ActorKind.SYSTEM.value:
            return SYSTEM_ACTOR
        return cls.player(UUID(label))

    def __str__(self) -> str:
        return self.label


CONSOLE_ACTOR = Actor(ActorKind.CONSOLE)
SYSTEM_ACTOR = Actor(ActorKind.SYSTEM)


# ============================================================================
# MEMBERSHIP
# ============================================================================


@dataclass(frozen=True)
class ExternalLink:
    """An external account attached to a member.

    Attributes:
        account_id: External provider account id (Discord snowflake).
        account_name: External display name at link time.
        verified: True once the member proved ownership with a code.
        linked_at: When the link was written.
        verified_at: When ownership was proven, if it was.
    """

    account_id: str
    account_name: str
    verified: bool
    linked_at: datetime
    verified_at: datetime | None = None


@dataclass(frozen=True)
class MemberEntry:
    """An admitted identity."""

    identity: UUID
    name: str
    added_by: Actor
    added_at: datetime
    reason: str | None = None
    link: ExternalLink | None = None

    @property
    def has_verified_link(self) -> bool:
        return self.link is not None and self.link.verified


# ============================================================================
# LINKING
# ============================================================================


@dataclass(frozen=True)
class VerificationRequest:
    """A live one-time-code challenge for one identity.

    ``remaining_attempts`` counts confirmations still allowed; the request
    dies when it reaches zero.
    """

    identity: UUID
    account_id: str
    account_name: str
    code: str
    issued_at: datetime
    expires_at: datetime
    remaining_attempts: int

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


# ============================================================================
# EXCLUSIONS
# ============================================================================


@dataclass(frozen=True)
class ExclusionEntry:
    """A ban.  ``expires_at is None`` means permanent."""

    identity: UUID
    name: str
    issued_by: Actor
    issued_at: datetime
    expires_at: datetime | None
    reason: str
    active: bool = True

    @property
    def is_permanent(self) -> bool:
        return self.expires_at is None

    def is_in_force(self, now: datetime) -> bool:
        """Active and not yet expired."""
        if not self.active:
            return False
        return self.expires_at is None or self.expires_at > now

    def remaining(self, now: datetime) -> timedelta | None:
        """Time left, ``None`` for permanent entries, zero once expired."""
        if self.expires_at is None:
            return None
        return max(self.expires_at - now, timedelta(0))


# ============================================================================
# JOIN ATTEMPTS
# ============================================================================


@dataclass(frozen=True)
class JoinAttempt:
    """Snapshot of repeated admission attempts by one non-member."""

    identity: UUID
    name: str
    first_seen: datetime
    last_seen: datetime
    count: int
    origin: str | None = None
    message: str | None = None


# ============================================================================
# AUDIT
# ============================================================================


@dataclass(frozen=True)
class AuditEvent:
    """One append-only audit record."""

    event_id: str
    timestamp: datetime
    action: str
    target: UUID | None
    actor: Actor
    details: str
