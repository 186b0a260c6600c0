"""
Shared pytest fixtures for the gatehouse test suite.

This module provides fixtures that are automatically available to all test files:
- A manual clock shared by every component under test
- In-memory audit sink and audit log
- Membership store, exclusion ledger and join-attempt tracker on memory stores
- A scripted verification client and a link coordinator wired to it
- A fully assembled Gatehouse facade

Every fixture is function-scoped so no state leaks between tests.
"""

from collections.abc import Generator
from uuid import UUID, uuid4

import pytest

from gatehouse.audit.writer import AuditLog, MemoryAuditSink
from gatehouse.config import LinkingSettings
from gatehouse.core.attempts import JoinAttemptTracker
from gatehouse.core.exclusions import ExclusionLedger
from gatehouse.core.linking import LinkCoordinator
from gatehouse.core.locks import IdentityLocks
from gatehouse.core.membership import MembershipStore
from gatehouse.core.service import Gatehouse
from gatehouse.db.store import MemoryKeyValueStore
from tests.fakes import FakeVerificationClient, ManualClock

# ============================================================================
# TIME AND AUDIT
# ============================================================================


@pytest.fixture
def clock() -> ManualClock:
    """Clock frozen at 2026-01-01 12:00 UTC until a test advances it."""
    return ManualClock()


@pytest.fixture
def audit_sink() -> MemoryAuditSink:
    return MemoryAuditSink()


@pytest.fixture
def audit(audit_sink: MemoryAuditSink, clock: ManualClock) -> AuditLog:
    return AuditLog(audit_sink, clock=clock)


# ============================================================================
# CORE COMPONENTS
# ============================================================================


@pytest.fixture
def locks() -> IdentityLocks:
    return IdentityLocks()


@pytest.fixture
def member_store() -> MemoryKeyValueStore:
    return MemoryKeyValueStore("members")


@pytest.fixture
def membership(
    member_store: MemoryKeyValueStore, audit: AuditLog, locks: IdentityLocks, clock: ManualClock
) -> MembershipStore:
    return MembershipStore(member_store, audit, locks, clock=clock)


@pytest.fixture
def exclusions(
    audit: AuditLog, locks: IdentityLocks, membership: MembershipStore, clock: ManualClock
) -> ExclusionLedger:
    return ExclusionLedger(
        MemoryKeyValueStore("exclusions"), audit, locks, membership=membership, clock=clock
    )


@pytest.fixture
def attempts(clock: ManualClock) -> JoinAttemptTracker:
    return JoinAttemptTracker(max_entries=200, clock=clock)


# ============================================================================
# LINKING
# ============================================================================


@pytest.fixture
def verification_client() -> FakeVerificationClient:
    """Scripted client with one community member, ``alice_dc`` (id 1001)."""
    client = FakeVerificationClient()
    client.add_account("alice_dc", "1001", roles=("role-verified",))
    return client


@pytest.fixture
def link_settings() -> LinkingSettings:
    return LinkingSettings(
        enabled=True,
        cooldown_seconds=30,
        code_ttl_seconds=300,
        max_attempts=5,
        code_length=6,
        worker_threads=2,
    )


@pytest.fixture
def linking(
    membership: MembershipStore,
    audit: AuditLog,
    verification_client: FakeVerificationClient,
    link_settings: LinkingSettings,
    clock: ManualClock,
) -> Generator[LinkCoordinator, None, None]:
    coordinator = LinkCoordinator(
        membership, audit, verification_client, link_settings, clock=clock
    )
    yield coordinator
    coordinator.shutdown()


@pytest.fixture
def gatehouse(
    membership: MembershipStore,
    exclusions: ExclusionLedger,
    attempts: JoinAttemptTracker,
    linking: LinkCoordinator,
    audit: AuditLog,
) -> Gatehouse:
    return Gatehouse(membership, exclusions, attempts, linking, audit)


# ============================================================================
# IDENTITIES
# ============================================================================


@pytest.fixture
def alice() -> UUID:
    return uuid4()


@pytest.fixture
def bob() -> UUID:
    return uuid4()
