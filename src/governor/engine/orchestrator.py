"""Orchestrator - Drives jobs through dispatch, validation, risk and approval."""

from __future__ import annotations

import json
import logging
import random
import threading
import time
import uuid
from collections import Counter, deque
from collections.abc import Callable, Mapping
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import asdict
from typing import Any

from governor.agents.base import Agent
from governor.audit.log import AuditEvent, AuditLog
from governor.config import GovernorConfig
from governor.engine.circuit import BreakerBoard
from governor.engine.decomposer import TaskGraph, decompose
from governor.engine.executor import AgentExecutor
from governor.engine.registry import AgentRegistry
from governor.errors import (
    AgentRejectedError,
    CircuitOpenError,
    MalformedJobError,
    TransientExecutionError,
    UnknownJobError,
)
from governor.governance.approval import ApprovalGate, ApprovalRequest
from governor.governance.consistency import GLOBAL, ConsistencyMonitor
from governor.governance.policies import DriftControls, build_policy
from governor.governance.risk import RiskClassifier
from governor.governance.validator import SupervisorValidator, as_failure
from governor.models import (
    AgentDescriptor,
    ApprovalRecord,
    CircuitState,
    Decision,
    ExecutionResult,
    Job,
    JobStatus,
    RiskTier,
    Subtask,
    SubtaskStatus,
)
from governor.storage.database import Database

logger = logging.getLogger(__name__)

_RETRY = "retry"


class Orchestrator:
    """
    Governed multi-agent orchestration.

    Workflow per job:
    1. Decompose the request into a subtask DAG (synchronously, at submit)
    2. Dispatch ready subtasks to the least loaded capable agent
    3. Execute through the agent's circuit breaker with timeout and retry
    4. Validate, classify risk, then accept or hold for human approval
    5. Feed scores to the consistency monitor and apply the drift policy

    Every state change is appended to the audit log while the orchestrator
    lock is held, so the log order matches the order of transitions.
    """

    def __init__(
        self,
        config: GovernorConfig | None = None,
        db: Database | None = None,
        clock: Callable[[], float] = time.monotonic,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.config = config or GovernorConfig()
        self.db = db
        if db is not None:
            db.ensure_tables()
        self._clock = clock

        self.audit = AuditLog(db)
        self.registry = AgentRegistry(self.audit, db)
        self.breakers = BreakerBoard(self.config.circuit_breaker, clock, self._on_circuit_transition)
        self.executor = AgentExecutor(
            self.registry, self.breakers, self.config.orchestrator, self.config.retry, rng
        )
        self.validator = SupervisorValidator(self.config.validation)
        self.classifier = RiskClassifier(self.config.risk)
        self.gate = ApprovalGate(self.config.approval, self.audit, db)
        self.gate.add_listener(self._on_decision)
        self.monitor = ConsistencyMonitor(self.config.drift)
        self.controls = DriftControls(self.registry, self.breakers)
        self.policy = build_policy(self.config.drift)

        self._lock = threading.RLock()
        self._jobs: dict[str, Job] = {}
        self._graphs: dict[str, TaskGraph] = {}
        self._drivers: dict[str, threading.Lock] = {}
        self._stops: dict[str, threading.Event] = {}
        self._finished: deque[str] = deque()
        self._pool = ThreadPoolExecutor(
            max_workers=self.config.orchestrator.max_workers, thread_name_prefix="governor-worker"
        )

    def __enter__(self) -> Orchestrator:
        return self

    def __exit__(self, *exc: object) -> None:
        self.shutdown()

    def shutdown(self) -> None:
        """Stop accepting work. In-flight agent calls are abandoned."""
        for stop in list(self._stops.values()):
            stop.set()
        self._pool.shutdown(wait=False, cancel_futures=True)
        self.executor.shutdown()

    # ── Agents ──────────────────────────────────────────────────────────────

    def register_agent(self, descriptor: AgentDescriptor, agent: Agent) -> None:
        self.registry.register(descriptor, agent)
        # touch the breaker so its state is reported from the start
        self.breakers.get(descriptor.agent_id)

    def deregister_agent(self, agent_id: str) -> bool:
        removed = self.registry.deregister(agent_id)
        if removed:
            self.executor.retire(agent_id)
        return removed

    # ── Jobs ────────────────────────────────────────────────────────────────

    def submit(self, request: Mapping[str, Any]) -> Job:
        """
        Decompose and register a job. Nothing is dispatched until ``run``.

        Raises:
            MalformedJobError: the request never enters the DAG
        """
        job_id = f"job-{uuid.uuid4().hex[:8]}"
        try:
            graph = decompose(request, self.registry, job_id)
            name = request.get("name", job_id)
            if not isinstance(name, str) or not name.strip():
                raise MalformedJobError("job name must be a non-empty string")
            payload = request.get("payload", {})
            if not isinstance(payload, Mapping):
                raise MalformedJobError("job payload must be an object")
            deadline = self._deadline_for(request)
        except MalformedJobError as e:
            self.audit.append(job_id, AuditEvent.JOB_REJECTED, e.to_dict(), job_id=job_id)
            logger.warning("Rejected job request: %s", e.message)
            raise

        job = Job(
            job_id=job_id,
            name=name,
            payload=dict(payload),
            subtasks=graph.nodes,
            impact=float(request.get("impact", 0.0)),
            reversible=bool(request.get("reversible", True)),
            deadline=deadline,
        )
        order = graph.topological_order()
        with self._lock:
            self._jobs[job_id] = job
            self._graphs[job_id] = graph
            self._drivers[job_id] = threading.Lock()
            self._stops[job_id] = threading.Event()
            self.audit.append(
                job_id,
                AuditEvent.JOB_SUBMITTED,
                {"status": job.status.value, "name": name, "subtasks": order},
                job_id=job_id,
            )
            for subtask_id in order:
                subtask = graph.nodes[subtask_id]
                self.audit.append(
                    subtask_id,
                    AuditEvent.SUBTASK_QUEUED,
                    {
                        "status": subtask.status.value,
                        "capability": subtask.capability,
                        "dependencies": sorted(subtask.dependencies),
                    },
                    job_id=job_id,
                )
        self._persist_job(job)
        logger.info("Submitted %s (%s) with %d subtasks", job_id, name, len(graph))
        return job

    def _deadline_for(self, request: Mapping[str, Any]) -> float | None:
        seconds = request.get("deadline_seconds", self.config.orchestrator.job_deadline)
        if seconds is None:
            return None
        if isinstance(seconds, bool) or not isinstance(seconds, int | float) or seconds <= 0:
            raise MalformedJobError(f"deadline_seconds must be a positive number, got {seconds!r}")
        return self._clock() + float(seconds)

    def get_job(self, job_id: str) -> Job:
        with self._lock:
            job = self._jobs.get(job_id)
        if job is None:
            raise UnknownJobError(f"unknown job {job_id}", job_id=job_id)
        return job

    def jobs(self) -> list[Job]:
        with self._lock:
            return sorted(self._jobs.values(), key=lambda j: (j.created_at, j.job_id))

    def run(self, job_id: str) -> JobStatus:
        """
        Drive a job until it is terminal or blocked only on approvals.

        Only one driver runs per job; a second caller waits for the first.
        Calling ``run`` again after decisions resumes the job.
        """
        job = self.get_job(job_id)
        with self._drivers[job_id]:
            self.sweep_approvals()
            with self._lock:
                if job.status.terminal:
                    return job.status
                self._set_job_status(job, JobStatus.RUNNING)
            return self._drive(job)

    def _drive(self, job: Job) -> JobStatus:
        graph = self._graphs[job.job_id]
        stop = self._stops[job.job_id]
        poll = self.config.orchestrator.poll_interval
        in_flight: dict[Future[None], str] = {}

        while True:
            self.sweep_approvals()
            with self._lock:
                if self._check_deadline(job) or job.status.terminal:
                    break
                broken = [
                    st
                    for st in job.subtasks.values()
                    if st.status in (SubtaskStatus.FAILED, SubtaskStatus.REJECTED)
                ]
                if broken:
                    self._fail_job(job, f"subtask {broken[0].subtask_id} {broken[0].status.value}")
                    break
                if all(st.status == SubtaskStatus.DONE for st in job.subtasks.values()):
                    self._set_job_status(job, JobStatus.COMPLETED)
                    break
                ready = graph.ready()

            waiting = False
            for subtask in ready:
                agent_id = self.registry.select(subtask.capability, allow=self._admits)
                if agent_id is None:
                    if self._capability_blocked(subtask.capability):
                        self.audit.append(
                            subtask.subtask_id,
                            AuditEvent.CIRCUIT_REJECTED,
                            {"capability": subtask.capability, "agents": self._agent_ids(subtask)},
                            job_id=job.job_id,
                        )
                        self._fail_subtask(
                            job, subtask, f"no agent available for {subtask.capability}: circuits open"
                        )
                        break
                    waiting = True
                    continue
                if self._dispatch(job, subtask, agent_id):
                    future = self._pool.submit(self._work, job, subtask, agent_id)
                    in_flight[future] = subtask.subtask_id

            if in_flight:
                done, _ = wait(list(in_flight), timeout=poll, return_when=FIRST_COMPLETED)
                for future in done:
                    in_flight.pop(future)
                    future.result()
                continue
            if waiting:
                stop.wait(poll)
                continue

            with self._lock:
                if job.status.terminal:
                    break
                # a decision may have landed since the top of the loop
                if graph.ready() or all(st.status == SubtaskStatus.DONE for st in job.subtasks.values()):
                    continue
                if any(st.status == SubtaskStatus.AWAITING_APPROVAL for st in job.subtasks.values()):
                    self._set_job_status(job, JobStatus.AWAITING_APPROVAL)
                    break
                self._fail_job(job, "no runnable subtasks")
                break

        if in_flight:
            logger.info("%s left %d in-flight subtasks behind", job.job_id, len(in_flight))
        return job.status

    def _agent_ids(self, subtask: Subtask) -> list[str]:
        return [d.agent_id for d in self.registry.find_agents(subtask.capability)]

    def _admits(self, agent_id: str) -> bool:
        return self.breakers.get(agent_id).would_allow()

    def _capability_blocked(self, capability: str) -> bool:
        """True when no agent could take the work now (none left, or every circuit open)."""
        agents = self.registry.find_agents(capability)
        return all(self.breakers.get(a.agent_id).state == CircuitState.OPEN for a in agents)

    def _check_deadline(self, job: Job) -> bool:
        # caller holds the lock
        if job.deadline is None or job.status.terminal or self._clock() <= job.deadline:
            return False
        self._fail_job(job, "deadline exceeded")
        return True

    def _expire_deadlines(self) -> None:
        """Fail every unfinished job past its deadline, including jobs idle on approvals."""
        with self._lock:
            for job in list(self._jobs.values()):
                self._check_deadline(job)

    def _dispatch(self, job: Job, subtask: Subtask, agent_id: str) -> bool:
        with self._lock:
            if job.status.terminal or subtask.status != SubtaskStatus.QUEUED:
                self.registry.release(agent_id)
                return False
            subtask.agent_id = agent_id
            self._mark(job, subtask, SubtaskStatus.DISPATCHED, agent_id=agent_id, attempt=1)
        return True

    def _agent_payload(self, job: Job, subtask: Subtask) -> dict[str, Any]:
        prefix = len(job.job_id) + 1
        with self._lock:
            inputs = {dep[prefix:]: job.subtasks[dep].result for dep in sorted(subtask.dependencies)}
        return {
            "job_id": job.job_id,
            "subtask_id": subtask.subtask_id,
            "payload": job.payload,
            "params": subtask.params,
            "inputs": inputs,
        }

    # ── Per-subtask pipeline (worker threads) ───────────────────────────────

    def _work(self, job: Job, subtask: Subtask, agent_id: str) -> None:
        current: str | None = agent_id
        excluded: set[str] = set()
        validation_retries = self.config.retry.validation_retries
        max_attempts = self.config.retry.max_attempts
        stop = self._stops[job.job_id]
        first = True
        try:
            while True:
                if not first and not self._mark(
                    job,
                    subtask,
                    SubtaskStatus.DISPATCHED,
                    agent_id=current,
                    attempt=subtask.attempts + 1,
                ):
                    return
                first = False
                subtask.attempts += 1

                try:
                    output, duration = self.executor.invoke(
                        current, subtask.capability, self._agent_payload(job, subtask), subtask.subtask_id
                    )
                except CircuitOpenError as e:
                    # a short-circuited call does not consume an attempt
                    subtask.attempts -= 1
                    self.audit.append(
                        subtask.subtask_id,
                        AuditEvent.CIRCUIT_REJECTED,
                        {"agent_id": current},
                        job_id=job.job_id,
                    )
                    excluded.add(current)
                    self.registry.release(current)
                    current = self._reroute(job, subtask, excluded, e.message)
                    if current is None:
                        return
                    continue
                except AgentRejectedError as e:
                    self.audit.append(
                        subtask.subtask_id,
                        AuditEvent.SUBTASK_EXECUTION_FAILED,
                        {
                            "agent_id": current,
                            "attempt": subtask.attempts,
                            "error": e.message,
                            "kind": type(e).__name__,
                        },
                        job_id=job.job_id,
                    )
                    self._fail_subtask(job, subtask, f"request refused: {e.message}")
                    return
                except TransientExecutionError as e:
                    self.audit.append(
                        subtask.subtask_id,
                        AuditEvent.SUBTASK_EXECUTION_FAILED,
                        {
                            "agent_id": current,
                            "attempt": subtask.attempts,
                            "error": e.message,
                            "kind": type(e).__name__,
                        },
                        job_id=job.job_id,
                    )
                    if subtask.attempts >= max_attempts:
                        self._fail_subtask(
                            job, subtask, f"{subtask.attempts} attempts exhausted: {e.message}"
                        )
                        return
                    logger.info(
                        "Attempt %d of %s on %s failed: %s",
                        subtask.attempts,
                        subtask.subtask_id,
                        current,
                        e.message,
                    )
                    if not self.executor.wait_backoff(subtask.attempts, stop):
                        return
                    continue

                if self._aborted(job, subtask):
                    self._discard(job, subtask, current)
                    return
                self.audit.append(
                    subtask.subtask_id,
                    AuditEvent.SUBTASK_RESULT,
                    {"agent_id": current, "attempt": subtask.attempts, "duration": round(duration, 4)},
                    job_id=job.job_id,
                )
                if self._govern(job, subtask, current, output, duration, validation_retries > 0) == _RETRY:
                    validation_retries -= 1
                    continue
                return
        except Exception as e:
            logger.exception("Worker for %s failed", subtask.subtask_id)
            self._fail_subtask(job, subtask, f"{type(e).__name__}: {e}")
        finally:
            if current is not None:
                self.registry.release(current)

    def _reroute(self, job: Job, subtask: Subtask, excluded: set[str], reason: str) -> str | None:
        agent_id = self.registry.select(subtask.capability, exclude=excluded, allow=self._admits)
        if agent_id is None:
            self._fail_subtask(
                job, subtask, f"{reason}; no alternate agent for {subtask.capability}"
            )
            return None
        with self._lock:
            subtask.agent_id = agent_id
        self.audit.append(
            subtask.subtask_id,
            AuditEvent.SUBTASK_REROUTED,
            {"excluded": sorted(excluded), "agent_id": agent_id, "reason": reason},
            job_id=job.job_id,
        )
        logger.info("Rerouted %s to %s (%s)", subtask.subtask_id, agent_id, reason)
        return agent_id

    def _govern(
        self,
        job: Job,
        subtask: Subtask,
        agent_id: str,
        output: Any,
        duration: float,
        retry_allowed: bool,
    ) -> str | None:
        """Validate, classify and route one result. Returns ``_RETRY`` for a validation retry."""
        report = self.validator.validate(subtask, output)
        self.audit.append(
            subtask.subtask_id,
            AuditEvent.SUBTASK_VALIDATED,
            {
                "agent_id": agent_id,
                "score": report.score,
                "passed": report.passed,
                "violations": report.violations,
                "compliance_violation": report.compliance_violation,
            },
            job_id=job.job_id,
        )
        self._observe(agent_id, report.score)

        if not report.passed and not report.compliance_violation and retry_allowed:
            logger.info(
                "Validation miss for %s (score %.2f), retrying with %s",
                subtask.subtask_id,
                report.score,
                agent_id,
            )
            return _RETRY

        tier = self.classifier.classify(subtask, report)
        self.audit.append(
            subtask.subtask_id,
            AuditEvent.SUBTASK_CLASSIFIED,
            {"tier": tier.value, "score": report.score},
            job_id=job.job_id,
        )
        result = ExecutionResult(
            subtask_id=subtask.subtask_id,
            agent_id=agent_id,
            output=output,
            score=report.score,
            tier=tier,
            report=report,
            duration=duration,
        )
        with self._lock:
            if self._aborted(job, subtask):
                self._discard(job, subtask, agent_id)
                return None
            subtask.result = output
            subtask.score = report.score
            subtask.tier = tier

        if report.compliance_violation:
            logger.warning(
                "Compliance violation in %s from %s: %s",
                subtask.subtask_id,
                agent_id,
                "; ".join(report.violations),
            )
            if self.gate.requires_approval(tier):
                self._hold(job, subtask, result, tier, "compliance_override")
            else:
                self._reject(job, subtask, as_failure(report).message)
            return None

        if not report.passed:
            if self.config.validation.override_via_approval:
                self._hold(job, subtask, result, tier, "validation_override")
            else:
                self._reject(job, subtask, as_failure(report).message)
            return None

        self._mark(job, subtask, SubtaskStatus.VALIDATED, score=report.score)
        if self.gate.requires_approval(tier):
            self._hold(job, subtask, result, tier, "risk_tier")
        elif self.controls.is_escalated(agent_id):
            self._hold(job, subtask, result, tier, "drift_escalation")
        else:
            if self._mark(job, subtask, SubtaskStatus.DONE, tier=tier.value):
                self.validator.remember(subtask.capability, output)
        return None

    def _hold(
        self, job: Job, subtask: Subtask, result: ExecutionResult, tier: RiskTier, reason: str
    ) -> None:
        if self._mark(job, subtask, SubtaskStatus.AWAITING_APPROVAL, tier=tier.value, reason=reason):
            self.gate.submit_for_approval(subtask, result, tier, reason)

    def _reject(self, job: Job, subtask: Subtask, reason: str) -> None:
        with self._lock:
            if subtask.status.terminal:
                return
            subtask.error = reason
            self._mark(job, subtask, SubtaskStatus.REJECTED, reason=reason)
            self._fail_job(job, f"subtask {subtask.subtask_id} rejected: {reason}")

    def _fail_subtask(self, job: Job, subtask: Subtask, reason: str) -> None:
        with self._lock:
            if subtask.status.terminal:
                return
            subtask.error = reason
            self._mark(job, subtask, SubtaskStatus.FAILED, reason=reason)
            self._fail_job(job, f"subtask {subtask.subtask_id} failed: {reason}")

    def _aborted(self, job: Job, subtask: Subtask) -> bool:
        return job.cancelled or job.status.terminal or subtask.status.terminal

    def _discard(self, job: Job, subtask: Subtask, agent_id: str | None) -> None:
        self.audit.append(
            subtask.subtask_id,
            AuditEvent.SUBTASK_DISCARDED,
            {"agent_id": agent_id, "job_status": job.status.value},
            job_id=job.job_id,
        )
        logger.info("Discarded late result for %s", subtask.subtask_id)

    def _observe(self, agent_id: str, score: float) -> None:
        for status in self.monitor.observe(agent_id, score):
            if status.alert:
                self.audit.append(status.agent_id, AuditEvent.DRIFT_ALERT, asdict(status))
                if status.agent_id != GLOBAL:
                    self.policy.on_drift(status.agent_id, status, self.controls)
            elif status.recovered:
                self.audit.append(status.agent_id, AuditEvent.DRIFT_RECOVERED, asdict(status))
                if status.agent_id != GLOBAL:
                    self.policy.on_recover(status.agent_id, status, self.controls)

    # ── State transitions ───────────────────────────────────────────────────

    def _mark(self, job: Job, subtask: Subtask, status: SubtaskStatus, **details: Any) -> bool:
        """Move a subtask to ``status`` and audit it. Refused once the subtask is terminal."""
        with self._lock:
            if subtask.status.terminal:
                return False
            subtask.status = status
            self.audit.append(
                subtask.subtask_id,
                AuditEvent.SUBTASK_STATUS,
                {"status": status.value, **details},
                job_id=job.job_id,
            )
        logger.debug("%s -> %s", subtask.subtask_id, status.value)
        return True

    def _set_job_status(self, job: Job, status: JobStatus, reason: str | None = None) -> None:
        # caller holds the lock
        job.status = status
        payload: dict[str, Any] = {"status": status.value}
        if reason:
            payload["reason"] = reason
        if status.terminal:
            job.finished_at = time.time()
            job.failure_reason = reason
        self.audit.append(job.job_id, AuditEvent.JOB_STATUS, payload, job_id=job.job_id)
        self._persist_job(job)
        if status.terminal:
            self._finished.append(job.job_id)
            self._evict_finished()
        log = logger.warning if status == JobStatus.FAILED else logger.info
        log("Job %s %s%s", job.job_id, status.value, f" ({reason})" if reason else "")

    def _fail_job(self, job: Job, reason: str) -> None:
        with self._lock:
            if job.status.terminal:
                return
            stop = self._stops.get(job.job_id)
            for subtask in job.subtasks.values():
                if not subtask.status.terminal:
                    subtask.error = subtask.error or reason
                    self._mark(job, subtask, SubtaskStatus.FAILED, reason=reason)
            self.gate.withdraw(job.job_id, reason)
            self._set_job_status(job, JobStatus.FAILED, reason)
        if stop is not None:
            stop.set()

    def _evict_finished(self) -> None:
        # caller holds the lock; jobs whose driver is still running stay
        while len(self._finished) > self.config.orchestrator.retain_jobs:
            job_id = self._finished[0]
            driver = self._drivers.get(job_id)
            if driver is not None and driver.locked():
                break
            self._finished.popleft()
            self._jobs.pop(job_id, None)
            self._graphs.pop(job_id, None)
            self._drivers.pop(job_id, None)
            self._stops.pop(job_id, None)
            self.gate.forget(job_id)
            logger.debug("Evicted finished job %s from memory", job_id)

    def _persist_job(self, job: Job) -> None:
        if self.db is None:
            return
        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO jobs (job_id, name, status, created_at, finished_at, failure_reason, snapshot)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(job_id) DO UPDATE SET
                    status = excluded.status,
                    finished_at = excluded.finished_at,
                    failure_reason = excluded.failure_reason,
                    snapshot = excluded.snapshot
                """,
                (
                    job.job_id,
                    job.name,
                    job.status.value,
                    job.created_at,
                    job.finished_at,
                    job.failure_reason,
                    json.dumps(job.to_dict(), default=str),
                ),
            )

    def _on_circuit_transition(
        self, agent_id: str, old: CircuitState, new: CircuitState, reason: str
    ) -> None:
        self.audit.append(
            agent_id,
            AuditEvent.CIRCUIT_TRANSITION,
            {"from": old.value, "to": new.value, "reason": reason},
        )

    # ── Approvals ───────────────────────────────────────────────────────────

    def _on_decision(self, request: ApprovalRequest, record: ApprovalRecord) -> None:
        with self._lock:
            job = self._jobs.get(request.job_id)
            subtask = job.subtasks.get(request.subtask_id) if job else None
            if job is None or subtask is None or subtask.status != SubtaskStatus.AWAITING_APPROVAL:
                logger.info("Decision for %s arrived after the subtask settled", request.subtask_id)
                return
            if record.decision == Decision.APPROVED:
                self._mark(job, subtask, SubtaskStatus.APPROVED, reviewer=record.reviewer)
                self._mark(job, subtask, SubtaskStatus.DONE, reviewer=record.reviewer)
            else:
                reason = f"rejected by {record.reviewer}"
                if record.rationale:
                    reason += f": {record.rationale}"
                subtask.error = reason
                self._mark(job, subtask, SubtaskStatus.REJECTED, reviewer=record.reviewer)
                self._fail_job(job, f"subtask {subtask.subtask_id} {reason}")
        if record.decision == Decision.APPROVED and request.reason in ("risk_tier", "drift_escalation"):
            self.validator.remember(subtask.capability, request.output)

    def record_decision(
        self,
        subtask_id: str,
        reviewer: str,
        decision: Decision | str,
        rationale: str = "",
        resume: bool = True,
    ) -> ApprovalRecord:
        """
        Record a reviewer decision for a held subtask.

        Args:
            subtask_id: Subtask awaiting approval
            reviewer: Who decided
            decision: "approved" or "rejected"
            rationale: Free-text justification kept in the audit trail
            resume: Drive the job onward in this thread once decided

        Raises:
            UnknownApprovalError: nothing is held for this subtask
            DecisionConflictError: a decision was already recorded
        """
        self._expire_deadlines()
        record = ApprovalRecord(
            subtask_id=subtask_id,
            reviewer=reviewer,
            decision=Decision(decision),
            rationale=rationale,
        )
        self.gate.record_decision(record)
        if resume:
            request = self.gate.get_request(subtask_id)
            job = self._jobs.get(request.job_id) if request else None
            if job is not None and job.status == JobStatus.AWAITING_APPROVAL:
                self.run(job.job_id)
        return record

    def pending_approvals(self, job_id: str | None = None) -> list[ApprovalRequest]:
        """Undecided requests whose subtask is still waiting on them."""
        self._expire_deadlines()
        pending = []
        for request in self.gate.pending(job_id):
            with self._lock:
                job = self._jobs.get(request.job_id)
                subtask = job.subtasks.get(request.subtask_id) if job else None
                waiting = subtask is not None and subtask.status == SubtaskStatus.AWAITING_APPROVAL
            if waiting:
                pending.append(request)
        return pending

    def sweep_approvals(self, resume: bool = False) -> list[ApprovalRecord]:
        """Apply configured timeout actions to overdue approval requests."""
        self._expire_deadlines()
        records = self.gate.expire_overdue()
        if resume:
            job_ids = set()
            for record in records:
                request = self.gate.get_request(record.subtask_id)
                if request is not None:
                    job_ids.add(request.job_id)
            for job_id in sorted(job_ids):
                if self.get_job(job_id).status == JobStatus.AWAITING_APPROVAL:
                    self.run(job_id)
        return records

    # ── Control ─────────────────────────────────────────────────────────────

    def cancel(self, job_id: str) -> JobStatus:
        """Fail every unfinished subtask and ask running agents to stop."""
        job = self.get_job(job_id)
        with self._lock:
            if job.status.terminal:
                return job.status
            job.cancelled = True
            running = [
                (st.agent_id, st.subtask_id)
                for st in job.subtasks.values()
                if st.status == SubtaskStatus.DISPATCHED and st.agent_id
            ]
            self._fail_job(job, "cancelled")
        for agent_id, subtask_id in running:
            self.executor.cancel_call(agent_id, subtask_id)
        return job.status

    def status(self, job_id: str | None = None) -> dict[str, Any]:
        """Get status of one job or of the whole orchestrator."""
        self._expire_deadlines()
        if job_id:
            job = self.get_job(job_id)
            with self._lock:
                data = job.to_dict()
            data["pending_approvals"] = [r.to_dict() for r in self.pending_approvals(job_id)]
            return data

        with self._lock:
            by_status = Counter(j.status.value for j in self._jobs.values())
        return {
            "jobs": dict(by_status),
            "agents": self.registry.get_stats(),
            "circuits": self.breakers.states(),
            "drift": {k: asdict(v) for k, v in self.monitor.snapshot().items()},
            "pending_approvals": len(self.pending_approvals()),
            "audit_seq": self.audit.last_seq,
        }
