"""Tests for entity types and their stored record format."""

from __future__ import annotations

from uuid import uuid4

import pytest

from gatehouse.core.records import member_from_record, member_to_record
from gatehouse.core.types import CONSOLE_ACTOR, SYSTEM_ACTOR, Actor, ActorKind, ExternalLink, MemberEntry


@pytest.mark.unit
class TestActor:
    def test_labels(self):
        identity = uuid4()
        assert Actor.player(identity).label == str(identity)
        assert CONSOLE_ACTOR.label == "console"
        assert SYSTEM_ACTOR.label == "system"

    def test_parse_returns_sentinels(self):
        assert Actor.parse("console") is CONSOLE_ACTOR
        assert Actor.parse("system") is SYSTEM_ACTOR

    def test_sentinel_cannot_carry_identity(self):
        with pytest.raises(ValueError):
            Actor(ActorKind.CONSOLE, uuid4())
        with pytest.raises(ValueError):
            Actor(ActorKind.PLAYER)


@pytest.mark.unit
def test_member_record_is_human_readable(clock):
    identity = uuid4()
    entry = MemberEntry(
        identity=identity,
        name="Alice",
        added_by=CONSOLE_ACTOR,
        added_at=clock(),
        link=ExternalLink("1001", "alice_dc", True, clock(), clock()),
    )

    record = member_to_record(entry)

    assert record["identity"] == str(identity)
    assert record["added_by"] == "console"
    assert record["added_at"] == "2026-01-01T12:00:00+00:00"
    assert record["link"]["verified"] is True
    assert member_from_record(record) == entry
