"""
Test doubles shared across the gatehouse test suite.

- ManualClock: a clock tests move forward explicitly.
- FakeVerificationClient: scripted stand-in for the Discord client.
- FlakyStore: in-memory store whose writes can be made to fail.
- BrokenAuditSink: sink that always fails.
"""

from __future__ import annotations

import re
import threading
from datetime import UTC, datetime, timedelta
from typing import Any

from gatehouse.audit.writer import AuditWriteError
from gatehouse.db.errors import StorageOperationContext, StorageReadError, StorageWriteError
from gatehouse.db.store import MemoryKeyValueStore
from gatehouse.discord.client import DeliveryResult, ExternalAccount, ExternalServiceUnavailable

START = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


class ManualClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeVerificationClient:
    """In-memory verification client with scripted accounts and failures."""

    def __init__(self) -> None:
        self.accounts: dict[str, ExternalAccount] = {}
        self.community: set[str] = set()
        self.roles: dict[str, set[str]] = {}
        self.sent: list[tuple[str, str]] = []
        self.unavailable = False
        self.refusal: str | None = None
        self.lookups = 0
        self.lookup_gate: threading.Event | None = None

    def add_account(
        self, name: str, account_id: str, *, member: bool = True, roles: tuple[str, ...] = ()
    ) -> ExternalAccount:
        account = ExternalAccount(account_id=account_id, name=name)
        self.accounts[name.lower()] = account
        if member:
            self.community.add(account_id)
        self.roles[account_id] = set(roles)
        return account

    def find_account_by_name(self, name: str) -> ExternalAccount | None:
        self.lookups += 1
        if self.lookup_gate is not None:
            self.lookup_gate.wait(timeout=5)
        self._check()
        return self.accounts.get(name.lower())

    def is_member(self, account_id: str) -> bool:
        self._check()
        return account_id in self.community

    def has_role(self, account_id: str, role_id: str) -> bool:
        self._check()
        return role_id in self.roles.get(account_id, set())

    def send_direct_message(self, account_id: str, text: str) -> DeliveryResult:
        self._check()
        if self.refusal is not None:
            return DeliveryResult(False, self.refusal)
        self.sent.append((account_id, text))
        return DeliveryResult(True)

    def last_code(self) -> str:
        """Digits of the most recently delivered code."""
        _, text = self.sent[-1]
        match = re.search(r"\d{4,}", text)
        assert match is not None, f"no code in {text!r}"
        return match.group(0)

    def _check(self) -> None:
        if self.unavailable:
            raise ExternalServiceUnavailable("scripted outage")


class FlakyStore(MemoryKeyValueStore):
    """Memory store whose reads or writes raise typed storage errors on demand."""

    def __init__(self, namespace: str = "flaky") -> None:
        super().__init__(namespace)
        self.fail_reads = False
        self.fail_writes = False

    def load_all(self) -> dict[str, dict[str, Any]]:
        if self.fail_reads:
            raise StorageReadError(context=StorageOperationContext(f"{self.namespace}.load_all"))
        return super().load_all()

    def upsert(self, key: str, record: dict[str, Any]) -> bool:
        self._maybe_fail("upsert")
        return super().upsert(key, record)

    def delete(self, key: str) -> bool:
        self._maybe_fail("delete")
        return super().delete(key)

    def write_flag(self, name: str, value: bool) -> bool:
        self._maybe_fail("write_flag")
        return super().write_flag(name, value)

    def _maybe_fail(self, operation: str) -> None:
        if self.fail_writes:
            raise StorageWriteError(
                context=StorageOperationContext(f"{self.namespace}.{operation}", "scripted")
            )


class BrokenAuditSink:
    """Audit sink that rejects every line."""

    def __init__(self) -> None:
        self.attempts = 0

    def write(self, line: str) -> None:
        self.attempts += 1
        raise AuditWriteError("disk full")
