"""
Approval Gate — Risk-Tiered Human Sign-Off

Results at or above the configured tier are held here until a reviewer
records a decision. First writer wins: once a decision is recorded for a
subtask, every later decision for it is refused with
``DecisionConflictError`` (enforced by a per-subtask lock).
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from governor.audit.log import AuditEvent, AuditLog
from governor.config import ApprovalConfig
from governor.errors import DecisionConflictError, UnknownApprovalError
from governor.models import ApprovalRecord, Decision, ExecutionResult, RiskTier, Subtask
from governor.storage.database import Database

logger = logging.getLogger(__name__)

TIMEOUT_REVIEWER = "system:timeout"


@dataclass
class ApprovalRequest:
    """A result held for review."""

    subtask_id: str
    job_id: str
    capability: str
    agent_id: str
    tier: RiskTier
    reason: str  # risk_tier | compliance_override | validation_override | drift_escalation
    output: Any
    score: float
    requested_at: float
    record: ApprovalRecord | None = None

    @property
    def decided(self) -> bool:
        return self.record is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "subtask_id": self.subtask_id,
            "job_id": self.job_id,
            "capability": self.capability,
            "agent_id": self.agent_id,
            "tier": self.tier.value,
            "reason": self.reason,
            "score": self.score,
            "requested_at": self.requested_at,
            "output_preview": _preview(self.output),
            "record": self.record.to_dict() if self.record else None,
        }


def _preview(output: Any, limit: int = 500) -> str:
    text = output if isinstance(output, str) else json.dumps(output, default=str)
    return text[:limit]


DecisionListener = Callable[[ApprovalRequest, ApprovalRecord], None]


class ApprovalGate:
    """Holds high-risk results pending sign-off."""

    def __init__(
        self,
        config: ApprovalConfig | None = None,
        audit: AuditLog | None = None,
        db: Database | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or ApprovalConfig()
        self.audit = audit
        self.db = db
        self._clock = clock
        self._lock = threading.Lock()
        self._requests: dict[str, ApprovalRequest] = {}
        self._decision_locks: dict[str, threading.Lock] = {}
        self._listeners: list[DecisionListener] = []
        if db is not None:
            db.ensure_tables()

    def add_listener(self, listener: DecisionListener) -> None:
        self._listeners.append(listener)

    def requires_approval(self, tier: RiskTier) -> bool:
        return RiskTier(tier).at_least(self.config.threshold)

    def submit_for_approval(
        self,
        subtask: Subtask,
        result: ExecutionResult,
        tier: RiskTier,
        reason: str = "risk_tier",
    ) -> ApprovalRequest:
        """Hold a result for review. Idempotent for an undecided subtask."""
        with self._lock:
            existing = self._requests.get(subtask.subtask_id)
            if existing is not None and not existing.decided:
                return existing
            request = ApprovalRequest(
                subtask_id=subtask.subtask_id,
                job_id=subtask.job_id,
                capability=subtask.capability,
                agent_id=result.agent_id,
                tier=RiskTier(tier),
                reason=reason,
                output=result.output,
                score=result.score,
                requested_at=self._clock(),
            )
            self._requests[subtask.subtask_id] = request
            self._decision_locks.setdefault(subtask.subtask_id, threading.Lock())

        if self.db is not None:
            with self.db.transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO approvals (
                        subtask_id, job_id, capability, tier, reason, requested_at, output_preview
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(subtask_id) DO UPDATE SET
                        tier = excluded.tier,
                        reason = excluded.reason,
                        requested_at = excluded.requested_at,
                        output_preview = excluded.output_preview,
                        reviewer = NULL, decision = NULL, rationale = NULL, decided_at = NULL
                    """,
                    (
                        request.subtask_id,
                        request.job_id,
                        request.capability,
                        request.tier.value,
                        request.reason,
                        request.requested_at,
                        _preview(request.output),
                    ),
                )
        if self.audit is not None:
            self.audit.append(
                subtask.subtask_id,
                AuditEvent.APPROVAL_REQUESTED,
                {"tier": request.tier.value, "reason": reason, "agent_id": request.agent_id},
                job_id=subtask.job_id,
            )
        logger.info(
            "Approval required for %s (tier=%s, reason=%s)", subtask.subtask_id, tier, reason
        )
        return request

    def record_decision(self, record: ApprovalRecord) -> ApprovalRecord:
        """Record a reviewer decision. The first decision for a subtask wins."""
        with self._lock:
            request = self._requests.get(record.subtask_id)
            lock = self._decision_locks.get(record.subtask_id)
        if request is None or lock is None:
            raise UnknownApprovalError(
                f"no approval request for subtask {record.subtask_id}",
                subtask_id=record.subtask_id,
            )

        with lock:
            if request.record is not None:
                if self.audit is not None:
                    self.audit.append(
                        record.subtask_id,
                        AuditEvent.APPROVAL_CONFLICT,
                        {"reviewer": record.reviewer, "decision": Decision(record.decision).value},
                        job_id=request.job_id,
                    )
                raise DecisionConflictError(
                    f"subtask {record.subtask_id} already {request.record.decision.value} "
                    f"by {request.record.reviewer}",
                    subtask_id=record.subtask_id,
                )
            request.record = record

            if self.db is not None:
                with self.db.transaction() as conn:
                    conn.execute(
                        """
                        UPDATE approvals
                        SET reviewer = ?, decision = ?, rationale = ?, decided_at = ?
                        WHERE subtask_id = ?
                        """,
                        (
                            record.reviewer,
                            Decision(record.decision).value,
                            record.rationale,
                            record.timestamp,
                            record.subtask_id,
                        ),
                    )
            if self.audit is not None:
                self.audit.append(
                    record.subtask_id,
                    AuditEvent.APPROVAL_DECIDED,
                    record.to_dict(),
                    job_id=request.job_id,
                )
            logger.info(
                "Decision for %s: %s by %s", record.subtask_id, record.decision, record.reviewer
            )
            for listener in self._listeners:
                listener(request, record)
        return record

    def withdraw(self, job_id: str, reason: str) -> list[str]:
        """Drop every undecided request of a job that no longer needs them."""
        with self._lock:
            withdrawn = sorted(
                r.subtask_id for r in self._requests.values() if r.job_id == job_id and not r.decided
            )
            for subtask_id in withdrawn:
                del self._requests[subtask_id]
                self._decision_locks.pop(subtask_id, None)
        if not withdrawn:
            return []

        if self.db is not None:
            with self.db.transaction() as conn:
                conn.executemany(
                    """
                    UPDATE approvals SET decision = 'withdrawn', rationale = ?, decided_at = ?
                    WHERE subtask_id = ? AND decision IS NULL
                    """,
                    [(reason, self._clock(), subtask_id) for subtask_id in withdrawn],
                )
        if self.audit is not None:
            for subtask_id in withdrawn:
                self.audit.append(
                    subtask_id, AuditEvent.APPROVAL_WITHDRAWN, {"reason": reason}, job_id=job_id
                )
        logger.info("Withdrew %d approval requests of %s (%s)", len(withdrawn), job_id, reason)
        return withdrawn

    def forget(self, job_id: str) -> None:
        """Release the in-memory requests of a finished job. Stored rows are kept."""
        with self._lock:
            for subtask_id in [s for s, r in self._requests.items() if r.job_id == job_id]:
                del self._requests[subtask_id]
                self._decision_locks.pop(subtask_id, None)

    def pending(self, job_id: str | None = None) -> list[ApprovalRequest]:
        with self._lock:
            requests = list(self._requests.values())
        return sorted(
            (r for r in requests if not r.decided and (job_id is None or r.job_id == job_id)),
            key=lambda r: (r.requested_at, r.subtask_id),
        )

    def get_request(self, subtask_id: str) -> ApprovalRequest | None:
        with self._lock:
            return self._requests.get(subtask_id)

    def get_record(self, subtask_id: str) -> ApprovalRecord | None:
        request = self.get_request(subtask_id)
        return request.record if request else None

    def records(self) -> list[ApprovalRecord]:
        with self._lock:
            return [r.record for r in self._requests.values() if r.record is not None]

    def expire_overdue(self, now: float | None = None) -> list[ApprovalRecord]:
        """Apply per-tier timeout actions to requests waiting too long."""
        if not self.config.timeout_actions:
            return []
        now = self._clock() if now is None else now
        applied: list[ApprovalRecord] = []
        for request in self.pending():
            action = self.config.timeout_actions.get(request.tier)
            if action is None or now - request.requested_at < action.after:
                continue
            decision = Decision.APPROVED if action.action == "approve" else Decision.REJECTED
            record = ApprovalRecord(
                subtask_id=request.subtask_id,
                reviewer=TIMEOUT_REVIEWER,
                decision=decision,
                rationale=f"no decision within {action.after:g}s",
                timestamp=now,
            )
            try:
                applied.append(self.record_decision(record))
            except (DecisionConflictError, UnknownApprovalError):
                # a reviewer got there first, or the job ended meanwhile
                continue
        return applied
