"""
Audit Log — Append-Only, Hash-Chained Record of Every Transition

``append`` is the single serialization point of the system: sequence
assignment, hash chaining and the durable write happen in one critical
section. Every status transition carries ``payload["status"]`` so that the
terminal state of any job or subtask can be replayed from the entries.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import IO, Any

from governor.models import AuditEntry, JobStatus, SubtaskStatus
from governor.storage.database import Database

logger = logging.getLogger(__name__)

GENESIS_HASH = "0" * 64


class AuditEvent(StrEnum):
    JOB_SUBMITTED = "job.submitted"
    JOB_REJECTED = "job.rejected"
    JOB_STATUS = "job.status"
    SUBTASK_QUEUED = "subtask.queued"
    SUBTASK_RESULT = "subtask.result"
    SUBTASK_EXECUTION_FAILED = "subtask.execution_failed"
    SUBTASK_REROUTED = "subtask.rerouted"
    SUBTASK_VALIDATED = "subtask.validated"
    SUBTASK_CLASSIFIED = "subtask.classified"
    SUBTASK_STATUS = "subtask.status"
    SUBTASK_DISCARDED = "subtask.result_discarded"
    APPROVAL_REQUESTED = "approval.requested"
    APPROVAL_DECIDED = "approval.decided"
    APPROVAL_CONFLICT = "approval.conflict"
    APPROVAL_WITHDRAWN = "approval.withdrawn"
    CIRCUIT_TRANSITION = "circuit.transition"
    CIRCUIT_REJECTED = "circuit.rejected"
    DRIFT_ALERT = "drift.alert"
    DRIFT_RECOVERED = "drift.recovered"
    AGENT_REGISTERED = "agent.registered"
    AGENT_DEREGISTERED = "agent.deregistered"


def _canonical(data: Any) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)


def _entry_hash(
    prev_hash: str,
    seq: int,
    entity_id: str,
    event_type: str,
    job_id: str | None,
    payload: dict[str, Any],
    timestamp: float,
) -> str:
    body = _canonical(
        {
            "seq": seq,
            "entity_id": entity_id,
            "event_type": event_type,
            "job_id": job_id,
            "payload": payload,
            "timestamp": timestamp,
        }
    )
    return hashlib.sha256((prev_hash + body).encode()).hexdigest()


@dataclass
class ReplayState:
    """Last observed status of every job and subtask."""

    jobs: dict[str, JobStatus] = field(default_factory=dict)
    subtasks: dict[str, SubtaskStatus] = field(default_factory=dict)
    last_seq: int = 0


def replay(entries: Iterable[AuditEntry]) -> ReplayState:
    """Reconstruct job and subtask statuses from an entry sequence."""
    state = ReplayState()
    for entry in entries:
        if entry.seq <= state.last_seq:
            raise ValueError(
                f"audit sequence not strictly increasing at {entry.seq} (after {state.last_seq})"
            )
        state.last_seq = entry.seq
        status = entry.payload.get("status")
        if status is None:
            continue
        if entry.event_type in (AuditEvent.JOB_SUBMITTED, AuditEvent.JOB_STATUS):
            state.jobs[entry.entity_id] = JobStatus(status)
        elif entry.event_type in (AuditEvent.SUBTASK_QUEUED, AuditEvent.SUBTASK_STATUS):
            state.subtasks[entry.entity_id] = SubtaskStatus(status)
    return state


class AuditLog:
    """
    Append-only audit log with optional SQLite durability.

    Without a database the log lives in memory only (tests, embedded use).
    With one, entries are read back from SQLite only, and the sequence
    counter and hash chain resume from the stored tail.
    """

    def __init__(self, db: Database | None = None) -> None:
        self.db = db
        self._lock = threading.Lock()
        self._entries: list[AuditEntry] = []
        self._seq = 0
        self._head = GENESIS_HASH
        if db is not None:
            db.ensure_tables()
            rows = db.execute("SELECT seq, hash FROM audit_log ORDER BY seq DESC LIMIT 1")
            if rows:
                self._seq = rows[0]["seq"]
                self._head = rows[0]["hash"]

    @property
    def last_seq(self) -> int:
        return self._seq

    def append(
        self,
        entity_id: str,
        event_type: str,
        payload: dict[str, Any] | None = None,
        job_id: str | None = None,
    ) -> AuditEntry:
        """Append one entry. The only mutator."""
        # Snapshot the payload so later mutation of the caller's objects
        # cannot change what was recorded.
        snapshot = json.loads(_canonical(payload or {}))
        event = str(event_type)

        with self._lock:
            seq = self._seq + 1
            timestamp = time.time()
            digest = _entry_hash(self._head, seq, entity_id, event, job_id, snapshot, timestamp)
            entry = AuditEntry(
                seq=seq,
                entity_id=entity_id,
                event_type=event,
                payload=snapshot,
                timestamp=timestamp,
                job_id=job_id,
                prev_hash=self._head,
                hash=digest,
            )
            if self.db is not None:
                with self.db.transaction() as conn:
                    conn.execute(
                        """
                        INSERT INTO audit_log (
                            seq, entity_id, event_type, job_id, payload,
                            timestamp, prev_hash, hash
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            seq,
                            entity_id,
                            event,
                            job_id,
                            _canonical(snapshot),
                            timestamp,
                            entry.prev_hash,
                            digest,
                        ),
                    )
            # Only advance once the write succeeded: a failed append never
            # burns a sequence number.
            self._seq = seq
            self._head = digest
            if self.db is None:
                self._entries.append(entry)

        logger.debug("audit #%d %s %s", seq, event, entity_id)
        return entry

    def query(
        self,
        entity_id: str | None = None,
        event_type: str | None = None,
        job_id: str | None = None,
        since_seq: int = 0,
        limit: int | None = None,
    ) -> list[AuditEntry]:
        """Read-only filtered view, ordered by sequence number."""
        if self.db is not None:
            return self._query_db(entity_id, event_type, job_id, since_seq, limit)

        with self._lock:
            entries = list(self._entries)
        result = [
            e
            for e in entries
            if e.seq > since_seq
            and (entity_id is None or e.entity_id == entity_id)
            and (event_type is None or e.event_type == event_type)
            and (job_id is None or e.job_id == job_id)
        ]
        return result[:limit] if limit is not None else result

    def _query_db(
        self,
        entity_id: str | None,
        event_type: str | None,
        job_id: str | None,
        since_seq: int,
        limit: int | None,
    ) -> list[AuditEntry]:
        assert self.db is not None
        sql, params = build_query(entity_id, event_type, job_id, since_seq, limit)
        return [row_to_entry(row) for row in self.db.execute(sql, params)]

    def export_jsonl(self, fp: IO[str], **filters: Any) -> int:
        """Write matching entries as JSON lines. Returns the count written."""
        count = 0
        for entry in self.query(**filters):
            fp.write(_canonical(entry.to_dict()) + "\n")
            count += 1
        return count

    def verify(self, entries: Iterable[AuditEntry] | None = None) -> int | None:
        """Check the hash chain. Returns the first bad seq, or None if intact."""
        prev = GENESIS_HASH
        last_seq = 0
        for entry in entries if entries is not None else self.query():
            if entry.seq <= last_seq or entry.prev_hash != prev:
                return entry.seq
            expected = _entry_hash(
                prev,
                entry.seq,
                entry.entity_id,
                entry.event_type,
                entry.job_id,
                entry.payload,
                entry.timestamp,
            )
            if expected != entry.hash:
                return entry.seq
            prev = entry.hash
            last_seq = entry.seq
        return None

    def replay(self, job_id: str | None = None) -> ReplayState:
        return replay(self.query(job_id=job_id))


def build_query(
    entity_id: str | None = None,
    event_type: str | None = None,
    job_id: str | None = None,
    since_seq: int = 0,
    limit: int | None = None,
) -> tuple[str, tuple[Any, ...]]:
    """Build the filtered SELECT shared by sync and async readers."""
    clauses = ["seq > ?"]
    params: list[Any] = [since_seq]
    if entity_id is not None:
        clauses.append("entity_id = ?")
        params.append(entity_id)
    if event_type is not None:
        clauses.append("event_type = ?")
        params.append(event_type)
    if job_id is not None:
        clauses.append("job_id = ?")
        params.append(job_id)
    sql = f"SELECT * FROM audit_log WHERE {' AND '.join(clauses)} ORDER BY seq"
    if limit is not None:
        sql += " LIMIT ?"
        params.append(limit)
    return sql, tuple(params)


def row_to_entry(row: Any) -> AuditEntry:
    """Convert a database row to an AuditEntry."""
    return AuditEntry(
        seq=row["seq"],
        entity_id=row["entity_id"],
        event_type=row["event_type"],
        payload=json.loads(row["payload"]),
        timestamp=row["timestamp"],
        job_id=row["job_id"],
        prev_hash=row["prev_hash"],
        hash=row["hash"],
    )
