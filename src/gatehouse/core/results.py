"""Closed result sets returned by the core operations.

Each operation returns one member of a closed union of frozen dataclasses.
Callers dispatch with ``match``/``isinstance`` and must handle every variant;
nothing succeeds silently without a matching success variant.

Failure variants carry an :class:`ErrorKind` so presentation code can map
whole categories (rate limited, external service down, ...) to one message
without enumerating every variant.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import ClassVar

from gatehouse.core.types import ExclusionEntry, ExternalLink


class ErrorKind(Enum):
    """Error taxonomy shared by every operation."""

    NOT_FOUND = "not_found"
    ALREADY_EXISTS = "already_exists"
    ALREADY_EXCLUDED = "already_excluded"
    EXPIRED = "expired"
    RATE_LIMITED = "rate_limited"
    ATTEMPTS_EXHAUSTED = "attempts_exhausted"
    EXTERNAL_SERVICE_REJECTED = "external_service_rejected"
    EXTERNAL_SERVICE_UNAVAILABLE = "external_service_unavailable"
    STORAGE_FAILURE = "storage_failure"
    INVALID_INPUT = "invalid_input"


class StoreOutcome(Enum):
    """Outcome of a Membership Store mutation.

    Truthy only for ``OK`` so ``if store.admit(...)`` reads naturally.
    """

    OK = "ok"
    ALREADY_EXISTS = "already_exists"
    NOT_FOUND = "not_found"
    ACCOUNT_IN_USE = "account_in_use"
    STORAGE_FAILURE = "storage_failure"
    INVALID_INPUT = "invalid_input"

    def __bool__(self) -> bool:
        return self is StoreOutcome.OK

    @property
    def kind(self) -> ErrorKind | None:
        return _STORE_OUTCOME_KINDS[self]


_STORE_OUTCOME_KINDS = {
    StoreOutcome.OK: None,
    StoreOutcome.ALREADY_EXISTS: ErrorKind.ALREADY_EXISTS,
    StoreOutcome.NOT_FOUND: ErrorKind.NOT_FOUND,
    StoreOutcome.ACCOUNT_IN_USE: ErrorKind.ALREADY_EXISTS,
    StoreOutcome.STORAGE_FAILURE: ErrorKind.STORAGE_FAILURE,
    StoreOutcome.INVALID_INPUT: ErrorKind.INVALID_INPUT,
}


# ============================================================================
# SHARED
# ============================================================================


@dataclass(frozen=True)
class InvalidInput:
    """The caller passed a blank name or an out-of-range value."""

    message: str
    kind: ClassVar[ErrorKind] = ErrorKind.INVALID_INPUT


# ============================================================================
# LINK REQUEST
# ============================================================================


@dataclass(frozen=True)
class CodeSent:
    account_id: str
    account_name: str
    expires_at: datetime
    kind: ClassVar[ErrorKind | None] = None


@dataclass(frozen=True)
class ServiceDisabled:
    kind: ClassVar[ErrorKind] = ErrorKind.EXTERNAL_SERVICE_UNAVAILABLE


@dataclass(frozen=True)
class NotAMember:
    kind: ClassVar[ErrorKind] = ErrorKind.NOT_FOUND


@dataclass(frozen=True)
class ExternalUserNotFound:
    kind: ClassVar[ErrorKind] = ErrorKind.EXTERNAL_SERVICE_REJECTED


@dataclass(frozen=True)
class NotInRequiredCommunity:
    kind: ClassVar[ErrorKind] = ErrorKind.EXTERNAL_SERVICE_REJECTED


@dataclass(frozen=True)
class MissingRequiredRole:
    kind: ClassVar[ErrorKind] = ErrorKind.EXTERNAL_SERVICE_REJECTED


@dataclass(frozen=True)
class AlreadyLinked:
    kind: ClassVar[ErrorKind] = ErrorKind.ALREADY_EXISTS


@dataclass(frozen=True)
class ExternalAccountInUse:
    kind: ClassVar[ErrorKind] = ErrorKind.ALREADY_EXISTS


@dataclass(frozen=True)
class RequestAlreadyPending:
    """The identity is inside its cooldown window."""

    retry_after_seconds: int
    kind: ClassVar[ErrorKind] = ErrorKind.RATE_LIMITED


@dataclass(frozen=True)
class DeliveryFailed:
    reason: str
    kind: ClassVar[ErrorKind] = ErrorKind.EXTERNAL_SERVICE_REJECTED


@dataclass(frozen=True)
class ExternalServiceError:
    message: str
    kind: ClassVar[ErrorKind] = ErrorKind.EXTERNAL_SERVICE_UNAVAILABLE


LinkRequestResult = (
    CodeSent
    | ServiceDisabled
    | NotAMember
    | ExternalUserNotFound
    | NotInRequiredCommunity
    | MissingRequiredRole
    | AlreadyLinked
    | ExternalAccountInUse
    | RequestAlreadyPending
    | DeliveryFailed
    | ExternalServiceError
    | InvalidInput
)


# ============================================================================
# LINK CONFIRMATION
# ============================================================================


@dataclass(frozen=True)
class Linked:
    link: ExternalLink
    kind: ClassVar[ErrorKind | None] = None


@dataclass(frozen=True)
class NoPendingRequest:
    kind: ClassVar[ErrorKind] = ErrorKind.NOT_FOUND


@dataclass(frozen=True)
class Expired:
    kind: ClassVar[ErrorKind] = ErrorKind.EXPIRED


@dataclass(frozen=True)
class InvalidCode:
    remaining: int
    kind: ClassVar[ErrorKind] = ErrorKind.INVALID_INPUT


@dataclass(frozen=True)
class AttemptsExhausted:
    kind: ClassVar[ErrorKind] = ErrorKind.ATTEMPTS_EXHAUSTED


@dataclass(frozen=True)
class StorageFailure:
    kind: ClassVar[ErrorKind] = ErrorKind.STORAGE_FAILURE


LinkConfirmResult = (
    Linked
    | NoPendingRequest
    | Expired
    | InvalidCode
    | AttemptsExhausted
    | NotAMember
    | ExternalAccountInUse
    | StorageFailure
)


# ============================================================================
# LINK HEALTH
# ============================================================================


class LinkHealth(Enum):
    """Result of re-validating an existing verified link."""

    VALID = "valid"
    NOT_LINKED = "not_linked"
    SERVICE_DISABLED = "service_disabled"
    NOT_IN_COMMUNITY = "not_in_community"
    MISSING_ROLE = "missing_role"
    API_ERROR = "api_error"


# ============================================================================
# EXCLUSION
# ============================================================================


@dataclass(frozen=True)
class Excluded:
    entry: ExclusionEntry
    kind: ClassVar[ErrorKind | None] = None


@dataclass(frozen=True)
class AlreadyExcluded:
    entry: ExclusionEntry
    kind: ClassVar[ErrorKind] = ErrorKind.ALREADY_EXCLUDED


ExclusionResult = Excluded | AlreadyExcluded | StorageFailure | InvalidInput


# ============================================================================
# ADMISSION
# ============================================================================


@dataclass(frozen=True)
class Admitted:
    """Entry allowed.  ``membership_enforced`` is False when the flag is off."""

    membership_enforced: bool
    kind: ClassVar[ErrorKind | None] = None


@dataclass(frozen=True)
class DeniedExcluded:
    entry: ExclusionEntry
    kind: ClassVar[ErrorKind] = ErrorKind.ALREADY_EXCLUDED


@dataclass(frozen=True)
class DeniedNotMember:
    attempt_count: int
    kind: ClassVar[ErrorKind] = ErrorKind.NOT_FOUND


AdmissionDecision = Admitted | DeniedExcluded | DeniedNotMember
