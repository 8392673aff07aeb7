"""
Governor Data Models

Jobs, subtasks, agent descriptors and the governance records that flow
between the orchestrator, validator, risk classifier, approval gate and
audit log.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class JobStatus(StrEnum):
    """Job lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    AWAITING_APPROVAL = "awaiting_approval"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class SubtaskStatus(StrEnum):
    """Subtask lifecycle states."""

    QUEUED = "queued"
    DISPATCHED = "dispatched"
    VALIDATED = "validated"
    AWAITING_APPROVAL = "awaiting_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    FAILED = "failed"
    DONE = "done"

    @property
    def terminal(self) -> bool:
        return self in (SubtaskStatus.DONE, SubtaskStatus.REJECTED, SubtaskStatus.FAILED)


class RiskTier(StrEnum):
    """Risk tiers, ordered low < medium < high < critical."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _TIER_ORDER.index(self)

    def at_least(self, other: RiskTier) -> bool:
        return self.rank >= RiskTier(other).rank

    def raised(self, steps: int = 1) -> RiskTier:
        return _TIER_ORDER[min(len(_TIER_ORDER) - 1, self.rank + steps)]

    @classmethod
    def highest(cls, *tiers: RiskTier) -> RiskTier:
        return max((cls(t) for t in tiers), key=lambda t: t.rank)


_TIER_ORDER = [RiskTier.LOW, RiskTier.MEDIUM, RiskTier.HIGH, RiskTier.CRITICAL]


class Decision(StrEnum):
    APPROVED = "approved"
    REJECTED = "rejected"


class CircuitState(StrEnum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class AgentDescriptor:
    """Capability-tagged description of a specialist agent."""

    agent_id: str
    capabilities: frozenset[str]
    concurrency_limit: int = 1
    endpoint: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.capabilities = frozenset(self.capabilities)
        if not self.agent_id:
            raise ValueError("agent_id must not be empty")
        if not self.capabilities:
            raise ValueError(f"agent {self.agent_id} declares no capabilities")
        if self.concurrency_limit < 1:
            raise ValueError(
                f"concurrency_limit must be >= 1, got {self.concurrency_limit}"
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "capabilities": sorted(self.capabilities),
            "concurrency_limit": self.concurrency_limit,
            "endpoint": self.endpoint,
            "metadata": self.metadata,
        }


@dataclass
class Subtask:
    """Smallest unit of dispatchable work in a job's dependency graph."""

    subtask_id: str
    job_id: str
    capability: str
    dependencies: frozenset[str] = frozenset()
    status: SubtaskStatus = SubtaskStatus.QUEUED
    agent_id: str | None = None
    result: Any = None
    attempts: int = 0
    params: dict[str, Any] = field(default_factory=dict)
    impact: float = 0.0
    reversible: bool = True
    tier: RiskTier | None = None
    score: float | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "subtask_id": self.subtask_id,
            "job_id": self.job_id,
            "capability": self.capability,
            "dependencies": sorted(self.dependencies),
            "status": self.status.value,
            "agent_id": self.agent_id,
            "attempts": self.attempts,
            "result": self.result,
            "impact": self.impact,
            "reversible": self.reversible,
            "tier": self.tier.value if self.tier else None,
            "score": self.score,
            "error": self.error,
        }


@dataclass
class Job:
    """A submitted job and its subtasks. Owned by the orchestrator."""

    job_id: str
    name: str
    payload: dict[str, Any]
    subtasks: dict[str, Subtask]
    status: JobStatus = JobStatus.PENDING
    impact: float = 0.0
    reversible: bool = True
    deadline: float | None = None  # time.monotonic() based
    created_at: float = field(default_factory=time.time)
    finished_at: float | None = None
    failure_reason: str | None = None
    cancelled: bool = False

    def to_dict(self, include_subtasks: bool = True) -> dict[str, Any]:
        data: dict[str, Any] = {
            "job_id": self.job_id,
            "name": self.name,
            "status": self.status.value,
            "impact": self.impact,
            "reversible": self.reversible,
            "created_at": self.created_at,
            "finished_at": self.finished_at,
            "failure_reason": self.failure_reason,
        }
        if include_subtasks:
            data["subtasks"] = {k: v.to_dict() for k, v in self.subtasks.items()}
        return data


@dataclass
class ValidationReport:
    """Outcome of a supervisor validation pass."""

    score: float
    passed: bool
    violations: list[str] = field(default_factory=list)
    compliance_violation: bool = False

    def __post_init__(self) -> None:
        if not 0.0 <= self.score <= 1.0:
            raise ValueError(f"score must be in [0.0, 1.0], got {self.score}")


@dataclass
class ExecutionResult:
    """A specialist's output with its validation score and risk tier."""

    subtask_id: str
    agent_id: str
    output: Any
    score: float
    tier: RiskTier
    report: ValidationReport | None = None
    duration: float = 0.0
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class ApprovalRecord:
    """A reviewer's decision. Immutable once written."""

    subtask_id: str
    reviewer: str
    decision: Decision
    rationale: str = ""
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "subtask_id": self.subtask_id,
            "reviewer": self.reviewer,
            "decision": Decision(self.decision).value,
            "rationale": self.rationale,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class AuditEntry:
    """One immutable, sequentially numbered state transition."""

    seq: int
    entity_id: str
    event_type: str
    payload: dict[str, Any]
    timestamp: float
    job_id: str | None = None
    prev_hash: str = ""
    hash: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "seq": self.seq,
            "entity_id": self.entity_id,
            "event_type": self.event_type,
            "payload": self.payload,
            "timestamp": self.timestamp,
            "job_id": self.job_id,
            "prev_hash": self.prev_hash,
            "hash": self.hash,
        }


@dataclass
class DriftStatus:
    """Rolling validator-score statistics for one agent (or ``*`` for global)."""

    agent_id: str
    mean: float = 0.0
    variance: float = 0.0
    baseline: float | None = None
    samples: int = 0
    drifting: bool = False
    alert: bool = False  # True only on the sample that raised the alert
    recovered: bool = False  # True only on the sample that cleared it
    reason: str = ""
