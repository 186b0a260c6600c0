"""Record codecs between core entities and persisted JSON dicts.

Timestamps are stored as ISO-8601 strings and actors by their label, so the
rows stay readable in a SQLite shell.  Decoding is strict: a malformed row
raises ``ValueError``/``KeyError`` and the caller decides whether to skip it.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from gatehouse.core.types import Actor, ExclusionEntry, ExternalLink, MemberEntry


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value is not None else None


def link_to_record(link: ExternalLink) -> dict[str, Any]:
    return {
        "account_id": link.account_id,
        "account_name": link.account_name,
        "verified": link.verified,
        "linked_at": _ts(link.linked_at),
        "verified_at": _ts(link.verified_at),
    }


def link_from_record(record: dict[str, Any]) -> ExternalLink:
    return ExternalLink(
        account_id=str(record["account_id"]),
        account_name=record["account_name"],
        verified=bool(record["verified"]),
        linked_at=datetime.fromisoformat(record["linked_at"]),
        verified_at=_parse_ts(record.get("verified_at")),
    )


def member_to_record(entry: MemberEntry) -> dict[str, Any]:
    return {
        "identity": str(entry.identity),
        "name": entry.name,
        "added_by": entry.added_by.label,
        "added_at": _ts(entry.added_at),
        "reason": entry.reason,
        "link": link_to_record(entry.link) if entry.link is not None else None,
    }


def member_from_record(record: dict[str, Any]) -> MemberEntry:
    link = record.get("link")
    return MemberEntry(
        identity=UUID(record["identity"]),
        name=record["name"],
        added_by=Actor.parse(record["added_by"]),
        added_at=datetime.fromisoformat(record["added_at"]),
        reason=record.get("reason"),
        link=link_from_record(link) if link else None,
    )


def exclusion_to_record(entry: ExclusionEntry) -> dict[str, Any]:
    return {
        "identity": str(entry.identity),
        "name": entry.name,
        "issued_by": entry.issued_by.label,
        "issued_at": _ts(entry.issued_at),
        "expires_at": _ts(entry.expires_at),
        "reason": entry.reason,
        "active": entry.active,
    }


def exclusion_from_record(record: dict[str, Any]) -> ExclusionEntry:
    return ExclusionEntry(
        identity=UUID(record["identity"]),
        name=record["name"],
        issued_by=Actor.parse(record["issued_by"]),
        issued_at=datetime.fromisoformat(record["issued_at"]),
        expires_at=_parse_ts(record.get("expires_at")),
        reason=record.get("reason") or "",
        active=bool(record.get("active", True)),
    )
