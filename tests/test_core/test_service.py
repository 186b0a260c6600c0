"""Tests for the Gatehouse facade: admission checks and wiring."""

from __future__ import annotations

from datetime import timedelta

import pytest

from gatehouse.audit.writer import verify_audit_file
from gatehouse.config import GatehouseConfig
from gatehouse.core.results import Admitted, DeniedExcluded, DeniedNotMember, StoreOutcome
from gatehouse.core.service import build_gatehouse
from gatehouse.core.types import CONSOLE_ACTOR, SYSTEM_ACTOR
from gatehouse.db.errors import StorageError


@pytest.mark.unit
class TestCheckAdmission:
    def test_open_when_membership_disabled(self, gatehouse, alice, attempts):
        decision = gatehouse.check_admission(alice, "Alice")

        assert decision == Admitted(membership_enforced=False)
        assert attempts.get(alice) is None

    def test_member_admitted_when_enforced(self, gatehouse, alice):
        gatehouse.membership.set_enabled(True, SYSTEM_ACTOR)
        gatehouse.admit(alice, "Alice", CONSOLE_ACTOR)

        assert gatehouse.check_admission(alice, "Alice") == Admitted(membership_enforced=True)

    def test_non_member_denied_and_tracked(self, gatehouse, alice):
        gatehouse.membership.set_enabled(True, SYSTEM_ACTOR)

        first = gatehouse.check_admission(alice, "Alice", origin="10.0.0.7")
        second = gatehouse.check_admission(alice, "Alice", message="please")

        assert first == DeniedNotMember(attempt_count=1)
        assert second == DeniedNotMember(attempt_count=2)
        attempt = gatehouse.attempts.get(alice)
        assert attempt.origin == "10.0.0.7"
        assert attempt.message == "please"

    def test_admit_clears_join_attempts(self, gatehouse, alice):
        gatehouse.membership.set_enabled(True, SYSTEM_ACTOR)
        gatehouse.check_admission(alice, "Alice")

        assert gatehouse.admit(alice, "Alice", CONSOLE_ACTOR) is StoreOutcome.OK
        assert gatehouse.attempts.get(alice) is None

    def test_exclusion_wins_even_when_open(self, gatehouse, alice, clock):
        gatehouse.admit(alice, "Alice", CONSOLE_ACTOR)
        gatehouse.exclusions.exclude(alice, "Alice", CONSOLE_ACTOR, timedelta(minutes=30), "x")

        decision = gatehouse.check_admission(alice, "Alice")
        assert isinstance(decision, DeniedExcluded)
        assert decision.entry.reason == "x"

        clock.advance(minutes=31)
        assert gatehouse.check_admission(alice, "Alice") == Admitted(membership_enforced=False)


def _config(tmp_path, backend: str = "sqlite") -> GatehouseConfig:
    cfg = GatehouseConfig()
    cfg.storage.backend = backend
    cfg.storage.path = str(tmp_path / "gatehouse.db")
    cfg.audit.path = str(tmp_path / "logs" / "audit.jsonl")
    return cfg


@pytest.mark.db
class TestBuildGatehouse:
    def test_sqlite_state_persists_across_builds(self, tmp_path, alice, clock):
        cfg = _config(tmp_path)
        first = build_gatehouse(cfg, clock=clock)
        first.admit(alice, "Alice", CONSOLE_ACTOR)
        first.membership.set_enabled(True, SYSTEM_ACTOR)
        first.exclusions.exclude(alice, "Alice", CONSOLE_ACTOR, None, "x")
        first.close()

        second = build_gatehouse(cfg, clock=clock)
        try:
            assert second.membership.is_member(alice)
            assert second.membership.is_enabled()
            assert second.exclusions.is_excluded(alice)
        finally:
            second.close()

    def test_audit_chain_spans_restarts(self, tmp_path, alice, clock):
        cfg = _config(tmp_path)
        for _ in range(2):
            gatehouse = build_gatehouse(cfg, clock=clock)
            gatehouse.admit(alice, "Alice", CONSOLE_ACTOR)
            gatehouse.close()

        result = verify_audit_file(cfg.audit.absolute_path)

        assert result.status == "ok"
        # start, MEMBER_ADD, stop, start, (already a member), stop
        assert result.events_checked == 5

    def test_linking_disabled_without_discord_settings(self, tmp_path, caplog):
        cfg = _config(tmp_path, backend="memory")
        cfg.linking.enabled = True

        with caplog.at_level("WARNING", logger="gatehouse.core.service"):
            gatehouse = build_gatehouse(cfg)
        try:
            assert gatehouse.linking.enabled is False
            assert "Discord is not configured" in caplog.text
        finally:
            gatehouse.close()

    def test_injected_client_enables_linking(self, tmp_path, verification_client):
        cfg = _config(tmp_path, backend="memory")
        cfg.linking.enabled = True
        cfg.audit.enabled = False

        gatehouse = build_gatehouse(cfg, client=verification_client)
        try:
            assert gatehouse.linking.enabled is True
            assert gatehouse.audit.enabled is False
        finally:
            gatehouse.close()

    def test_unreadable_storage_refuses_to_build(self, tmp_path, alice, clock):
        cfg = _config(tmp_path)
        first = build_gatehouse(cfg, clock=clock)
        first.admit(alice, "Alice", CONSOLE_ACTOR)
        first.membership.set_enabled(True, SYSTEM_ACTOR)
        first.exclusions.exclude(alice, "Alice", CONSOLE_ACTOR, None, "griefing")
        first.close()
        cfg.storage.absolute_path.write_bytes(b"not a sqlite database " * 64)

        with pytest.raises(StorageError):
            build_gatehouse(cfg, clock=clock)

        assert verify_audit_file(cfg.audit.absolute_path).status == "ok"
