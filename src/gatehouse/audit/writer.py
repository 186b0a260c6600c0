"""Hash-chained JSONL audit log.

Overview
--------
Every security-relevant mutation in the core (admit, revoke, link, exclude,
global toggle) is recorded here as one JSON line.  The log is append-only;
nothing in the core reads it back except :func:`verify_audit_lines`.

Envelope format
---------------
.. code-block:: json

    {
      "event_id":       "a3f91c9e2d4b5e6f...",
      "timestamp":      "2026-02-27T14:23:01.452345+00:00",
      "action":         "MEMBER_ADD",
      "target":         "0b7c...-uuid",
      "actor":          "console",
      "details":        "Name: Alice",
      "schema_version": "1.0",
      "prev_checksum":  "sha256:4be1...",
      "_checksum":      "sha256:b94f3e..."
    }

``_checksum`` is the SHA-256 of the canonical JSON body (every field except
``_checksum``, serialised with ``sort_keys=True``).  Because the body includes
``prev_checksum``, the lines form a hash chain: editing, removing or
reordering any line breaks every checksum after it.  The first line of a
fresh log chains from :data:`GENESIS_CHECKSUM`.

Failure isolation
-----------------
:meth:`AuditLog.append` never raises.  A sink failure is logged at WARNING on
this module's logger and the triggering mutation proceeds; only the audit
record is lost.  The chain head is advanced only after a successful write, so
a lost record does not break verification of the records around it.

Concurrency
-----------
Appends are serialised by an in-process mutex (chain order == write order).
:class:`FileAuditSink` additionally takes ``fcntl.flock(LOCK_EX)`` so two
processes sharing one file do not interleave partial lines.
"""

from __future__ import annotations

import fcntl
import hashlib
import json
import logging
import threading
import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Literal, Protocol
from uuid import UUID

from gatehouse.core.types import SYSTEM_ACTOR, Actor, AuditEvent, Clock, utc_now

logger = logging.getLogger(__name__)

_SCHEMA_VERSION = "1.0"

GENESIS_CHECKSUM = "sha256:" + "0" * 64

# Bytes read from the end of an existing log to recover the chain head.
_TAIL_CHUNK_BYTES = 16_384

# ── Action tags ───────────────────────────────────────────────────────────────
MEMBER_ADD = "MEMBER_ADD"
MEMBER_REMOVE = "MEMBER_REMOVE"
MEMBERSHIP_TOGGLE = "MEMBERSHIP_TOGGLE"
LINK_SET = "LINK_SET"
LINK_CLEAR = "LINK_CLEAR"
LINK_ATTEMPTS_EXHAUSTED = "LINK_ATTEMPTS_EXHAUSTED"
EXCLUSION_ADD = "EXCLUSION_ADD"
EXCLUSION_REMOVE = "EXCLUSION_REMOVE"
AUDIT_LOG_STARTED = "AUDIT_LOG_STARTED"
AUDIT_LOG_STOPPED = "AUDIT_LOG_STOPPED"


class AuditWriteError(Exception):
    """Raised by a sink when a line could not be persisted.

    Only sinks raise this; :class:`AuditLog` catches it and logs a warning.
    """


class AuditSink(Protocol):
    """Destination for serialised audit lines."""

    def write(self, line: str) -> None:
        """Persist one line (without trailing newline) or raise."""
        ...


@dataclass(frozen=True)
class AuditVerifyResult:
    """Outcome of replaying an audit chain.

    Attributes:
        status: ``"ok"``, ``"empty"`` or ``"corrupt"``.
        events_checked: Number of lines that verified before stopping.
        last_event_id: ``event_id`` of the last valid line, if any.
        error_line: 1-based line number of the first broken line.
        error_detail: Human-readable failure reason.
    """

    status: Literal["ok", "empty", "corrupt"]
    events_checked: int
    last_event_id: str | None = None
    error_line: int | None = None
    error_detail: str | None = None


# ── Sinks ─────────────────────────────────────────────────────────────────────


class FileAuditSink:
    """Append lines to a file under an exclusive POSIX lock.

    The parent directory and the file are created on the first write.
    ``fcntl`` is POSIX-only; Windows is not supported by this sink.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def write(self, line: str) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as fh:
                fcntl.flock(fh, fcntl.LOCK_EX)
                try:
                    fh.write(line + "\n")
                    fh.flush()
                finally:
                    fcntl.flock(fh, fcntl.LOCK_UN)
        except OSError as exc:
            raise AuditWriteError(f"Failed to append audit line to {self.path}: {exc}") from exc

    def last_line(self) -> str | None:
        """Return the last non-empty line, or ``None`` for a missing/empty file."""
        if not self.path.exists():
            return None
        try:
            with self.path.open("rb") as fh:
                fh.seek(0, 2)
                size = fh.tell()
                if size == 0:
                    return None
                fh.seek(max(0, size - _TAIL_CHUNK_BYTES))
                chunk = fh.read()
        except OSError:
            return None
        for line in reversed(chunk.decode("utf-8", errors="replace").splitlines()):
            if line.strip():
                return line.strip()
        return None

    def read_lines(self) -> list[str]:
        if not self.path.exists():
            return []
        return self.path.read_text(encoding="utf-8").splitlines()


class MemoryAuditSink:
    """Keep lines in memory.  Used by tests and embedded deployments."""

    def __init__(self) -> None:
        self.lines: list[str] = []
        self._lock = threading.Lock()

    def write(self, line: str) -> None:
        with self._lock:
            self.lines.append(line)

    def last_line(self) -> str | None:
        with self._lock:
            return self.lines[-1] if self.lines else None

    def read_lines(self) -> list[str]:
        with self._lock:
            return list(self.lines)

    def events(self) -> list[AuditEvent]:
        """Parse every stored line back into :class:`AuditEvent` values."""
        return [parse_audit_line(line) for line in self.read_lines() if line.strip()]


# ── Audit log ─────────────────────────────────────────────────────────────────


class AuditLog:
    """Append-only recorder of security-relevant events.

    Args:
        sink: Where lines go.  ``None`` disables persistence; appends are then
            only logged at DEBUG.
        clock: Time source for event timestamps.
    """

    def __init__(self, sink: AuditSink | None, *, clock: Clock = utc_now) -> None:
        self._sink = sink
        self._clock = clock
        self._lock = threading.Lock()
        self._head = self._recover_head()

    @property
    def enabled(self) -> bool:
        return self._sink is not None

    def append(
        self,
        action: str,
        target: UUID | None,
        actor: Actor,
        details: str = "",
    ) -> str | None:
        """Record one event.

        Returns:
            The new ``event_id``, or ``None`` when the write failed or the
            log is disabled.  Never raises.
        """
        logger.debug("audit: %s target=%s actor=%s details=%s", action, target, actor, details)
        if self._sink is None:
            return None

        try:
            with self._lock:
                envelope_body = {
                    "event_id": uuid.uuid4().hex,
                    "timestamp": self._clock().isoformat(),
                    "action": action,
                    "target": str(target) if target is not None else None,
                    "actor": actor.label,
                    "details": details,
                    "schema_version": _SCHEMA_VERSION,
                    "prev_checksum": self._head,
                }
                checksum = f"sha256:{_compute_checksum(envelope_body)}"
                line = json.dumps(
                    {**envelope_body, "_checksum": checksum}, ensure_ascii=False, sort_keys=True
                )
                self._sink.write(line)
                self._head = checksum
                return envelope_body["event_id"]
        except Exception:
            # A lost audit record must never roll back the mutation that caused it.
            logger.warning(
                "Audit write failed for %s on %s by %s; mutation continues.",
                action,
                target,
                actor,
                exc_info=True,
            )
            return None

    def start(self) -> None:
        """Write the startup marker."""
        self.append(AUDIT_LOG_STARTED, None, SYSTEM_ACTOR, "Audit logging initialized")

    def close(self) -> None:
        """Write the shutdown marker."""
        self.append(AUDIT_LOG_STOPPED, None, SYSTEM_ACTOR, "Audit logging shutdown")

    def _recover_head(self) -> str:
        """Continue the chain of an existing log instead of forking it."""
        last_line = getattr(self._sink, "last_line", None)
        if last_line is None:
            return GENESIS_CHECKSUM
        line = last_line()
        if not line:
            return GENESIS_CHECKSUM
        try:
            checksum = json.loads(line)["_checksum"]
        except (json.JSONDecodeError, KeyError, TypeError):
            logger.critical("Audit log tail is unreadable; starting a new chain segment.")
            return GENESIS_CHECKSUM
        return str(checksum)


# ── Verification ──────────────────────────────────────────────────────────────


def verify_audit_lines(lines: Iterable[str]) -> AuditVerifyResult:
    """Replay the hash chain over ``lines`` and report the first break.

    Blank lines are ignored.  The first line must chain from
    :data:`GENESIS_CHECKSUM`; every later line must chain from its
    predecessor's ``_checksum`` and carry a matching checksum of its own.
    """
    expected_prev = GENESIS_CHECKSUM
    checked = 0
    last_event_id: str | None = None

    for number, raw in enumerate(lines, start=1):
        if not raw.strip():
            continue
        try:
            envelope = json.loads(raw)
        except json.JSONDecodeError as exc:
            return AuditVerifyResult(
                "corrupt", checked, last_event_id, number, f"Line is not valid JSON: {exc}"
            )
        if not isinstance(envelope, dict) or not isinstance(envelope.get("_checksum"), str):
            return AuditVerifyResult(
                "corrupt", checked, last_event_id, number, "Line is missing a '_checksum' field."
            )

        body = {k: v for k, v in envelope.items() if k != "_checksum"}
        if body.get("prev_checksum") != expected_prev:
            return AuditVerifyResult(
                "corrupt",
                checked,
                last_event_id,
                number,
                f"Chain break: expected prev_checksum {expected_prev!r}, "
                f"found {body.get('prev_checksum')!r}.",
            )
        recomputed = f"sha256:{_compute_checksum(body)}"
        if recomputed != envelope["_checksum"]:
            return AuditVerifyResult(
                "corrupt",
                checked,
                last_event_id,
                number,
                f"Checksum mismatch. Recorded: {envelope['_checksum']!r}. "
                f"Expected: {recomputed!r}.",
            )

        expected_prev = envelope["_checksum"]
        last_event_id = envelope.get("event_id")
        checked += 1

    if checked == 0:
        return AuditVerifyResult("empty", 0)
    return AuditVerifyResult("ok", checked, last_event_id)


def verify_audit_file(path: Path | str) -> AuditVerifyResult:
    """Verify the full chain stored at ``path``."""
    return verify_audit_lines(FileAuditSink(path).read_lines())


def parse_audit_line(line: str) -> AuditEvent:
    """Decode one audit line into an :class:`AuditEvent` (no verification)."""
    envelope = json.loads(line)
    target = envelope.get("target")
    return AuditEvent(
        event_id=envelope["event_id"],
        timestamp=datetime.fromisoformat(envelope["timestamp"]),
        action=envelope["action"],
        target=UUID(target) if target else None,
        actor=Actor.parse(envelope["actor"]),
        details=envelope.get("details", ""),
    )


def _compute_checksum(payload: dict) -> str:
    """SHA-256 hex digest of the canonical JSON serialisation of ``payload``."""
    canonical = json.dumps(payload, ensure_ascii=False, sort_keys=True)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
