"""Append-only audit log, replay and export."""

from governor.audit.log import AuditEvent, AuditLog, ReplayState, replay
from governor.audit.reader import AsyncAuditReader

__all__ = [
    "AsyncAuditReader",
    "AuditEvent",
    "AuditLog",
    "ReplayState",
    "replay",
]
