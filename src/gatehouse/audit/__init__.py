"""Audit package: append-only, hash-chained JSONL event log.

Public surface
--------------
- :class:`AuditLog`            — ``append(action, target, actor, details)``; never raises.
- :class:`FileAuditSink`       — POSIX-locked file sink.
- :class:`MemoryAuditSink`     — in-process sink for tests.
- :func:`verify_audit_file`    — replay the chain stored in a file.
- :func:`verify_audit_lines`   — replay the chain over any iterable of lines.

Usage example
-------------
::

    from gatehouse.audit import AuditLog, FileAuditSink

    audit = AuditLog(FileAuditSink("data/logs/audit.jsonl"))
    audit.append("MEMBER_ADD", player_id, CONSOLE_ACTOR, "Name: Alice")
"""

from gatehouse.audit.writer import (
    AuditLog,
    AuditSink,
    AuditVerifyResult,
    AuditWriteError,
    FileAuditSink,
    MemoryAuditSink,
    parse_audit_line,
    verify_audit_file,
    verify_audit_lines,
)

__all__ = [
    "AuditLog",
    "AuditSink",
    "AuditVerifyResult",
    "AuditWriteError",
    "FileAuditSink",
    "MemoryAuditSink",
    "parse_audit_line",
    "verify_audit_file",
    "verify_audit_lines",
]
