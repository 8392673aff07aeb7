"""End-to-end tests for the Orchestrator."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

from governor.audit import AuditEvent
from governor.config import GovernorConfig
from governor.engine import Orchestrator
from governor.errors import (
    AgentRejectedError,
    DecisionConflictError,
    MalformedJobError,
    UnknownApprovalError,
    UnknownJobError,
)
from governor.models import AgentDescriptor, Job, JobStatus, SubtaskStatus
from governor.storage.database import Database


class FakeAgent:
    """Records calls and answers through ``fn``."""

    def __init__(self, fn: Callable[[str, dict[str, Any]], Any] | None = None) -> None:
        self.fn = fn or (lambda capability, payload: {"text": f"{capability} report on quarterly figures"})
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self._lock = threading.Lock()

    def execute(self, capability: str, payload: dict[str, Any]) -> Any:
        with self._lock:
            self.calls.append((capability, payload))
        return self.fn(capability, payload)


class BlockingAgent(FakeAgent):
    """Blocks until released or cancelled."""

    def __init__(self) -> None:
        super().__init__()
        self.started = threading.Event()
        self.release = threading.Event()
        self.cancelled: list[str] = []

    def execute(self, capability: str, payload: dict[str, Any]) -> Any:
        super().execute(capability, payload)
        self.started.set()
        self.release.wait(5.0)
        return {"text": "late answer"}

    def cancel(self, subtask_id: str) -> None:
        self.cancelled.append(subtask_id)
        self.release.set()


def _config(**sections: dict[str, Any]) -> GovernorConfig:
    data: dict[str, dict[str, Any]] = {
        "orchestrator": {"poll_interval": 0.01, "max_workers": 4},
        "retry": {"base_delay": 0.0, "jitter": 0.0},
    }
    for name, values in sections.items():
        data.setdefault(name, {}).update(values)
    return GovernorConfig.from_dict(data)


def _wait_until(predicate: Callable[[], bool], timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def make_orchestrator() -> Iterator[Callable[..., Orchestrator]]:
    created: list[Orchestrator] = []

    def factory(config: GovernorConfig | None = None, db: Database | None = None) -> Orchestrator:
        orch = Orchestrator(config or _config(), db=db)
        created.append(orch)
        return orch

    yield factory
    for orch in created:
        orch.shutdown()


def _events(orch: Orchestrator, event: str, job_id: str | None = None) -> list:
    return orch.audit.query(event_type=event, job_id=job_id)


def _assert_no_unapproved_high_risk(orch: Orchestrator) -> None:
    """Nothing at high or critical tier reaches done without an approval."""
    tiers: dict[str, str] = {}
    approved: set[str] = set()
    for entry in orch.audit.query():
        if entry.event_type == AuditEvent.SUBTASK_CLASSIFIED:
            tiers[entry.entity_id] = entry.payload["tier"]
        elif entry.event_type == AuditEvent.APPROVAL_DECIDED and entry.payload["decision"] == "approved":
            approved.add(entry.entity_id)
        elif entry.event_type == AuditEvent.SUBTASK_STATUS and entry.payload["status"] == "done":
            if tiers.get(entry.entity_id) in ("high", "critical"):
                assert entry.entity_id in approved


REPORT_JOB = {
    "name": "quarterly-report",
    "payload": {"text": "Q3 revenue grew across regions"},
    "stages": [
        {"parallel": [{"capability": "summarize"}, {"capability": "translate"}]},
        {"capability": "merge"},
    ],
}


class TestDispatch:
    """Dependency ordering and agent selection."""

    def test_parallel_stages_then_merge(self, make_orchestrator) -> None:
        """summarize and translate run concurrently; merge sees both results."""
        barrier = threading.Barrier(2, timeout=5.0)

        def work(capability: str, payload: dict[str, Any]) -> Any:
            if capability in ("summarize", "translate"):
                barrier.wait()
                return {"text": f"{capability} of quarterly revenue"}
            return {"text": "merged quarterly revenue", "parts": sorted(payload["inputs"])}

        agent = FakeAgent(work)
        orch = make_orchestrator()
        orch.register_agent(
            AgentDescriptor("worker", {"summarize", "translate", "merge"}, concurrency_limit=4), agent
        )
        job = orch.submit(REPORT_JOB)

        assert orch.run(job.job_id) == JobStatus.COMPLETED

        merge_payload = next(p for c, p in agent.calls if c == "merge")
        assert set(merge_payload["inputs"]) == {"summarize", "translate"}
        assert merge_payload["inputs"]["summarize"] == {"text": "summarize of quarterly revenue"}
        assert merge_payload["payload"] == REPORT_JOB["payload"]

        statuses = _events(orch, AuditEvent.SUBTASK_STATUS, job.job_id)
        done_seq = {
            e.entity_id: e.seq for e in statuses if e.payload["status"] == "done"
        }
        merge_dispatched = next(
            e.seq
            for e in statuses
            if e.entity_id == f"{job.job_id}.merge" and e.payload["status"] == "dispatched"
        )
        assert merge_dispatched > done_seq[f"{job.job_id}.summarize"]
        assert merge_dispatched > done_seq[f"{job.job_id}.translate"]

    def test_concurrency_limit_respected(self, make_orchestrator) -> None:
        active = 0
        peak = 0
        lock = threading.Lock()

        def work(capability: str, payload: dict[str, Any]) -> Any:
            nonlocal active, peak
            with lock:
                active += 1
                peak = max(peak, active)
            time.sleep(0.02)
            with lock:
                active -= 1
            return {"text": "identical summary text"}

        orch = make_orchestrator()
        orch.register_agent(AgentDescriptor("solo", {"summarize"}, concurrency_limit=1), FakeAgent(work))
        job = orch.submit(
            {"stages": [{"parallel": [{"capability": "summarize"}] * 3}]}
        )
        assert orch.run(job.job_id) == JobStatus.COMPLETED
        assert set(job.subtasks) == {f"{job.job_id}.summarize-{i}" for i in (1, 2, 3)}
        assert peak == 1

    def test_malformed_job_is_rejected_and_audited(self, make_orchestrator) -> None:
        orch = make_orchestrator()
        orch.register_agent(AgentDescriptor("worker", {"summarize"}), FakeAgent())
        with pytest.raises(MalformedJobError):
            orch.submit({"stages": [{"capability": "deploy"}]})
        assert orch.jobs() == []
        assert len(_events(orch, AuditEvent.JOB_REJECTED)) == 1
        assert _events(orch, AuditEvent.SUBTASK_QUEUED) == []

    def test_unknown_job(self, make_orchestrator) -> None:
        orch = make_orchestrator()
        with pytest.raises(UnknownJobError):
            orch.run("job-missing")


class TestFailureHandling:
    """Retries, circuit breaking, timeouts and rerouting."""

    def test_circuit_opens_after_threshold(self, make_orchestrator) -> None:
        """With more attempts allowed than the threshold, the breaker stops the calls."""

        def down(capability: str, payload: dict[str, Any]) -> Any:
            raise ConnectionError("backend down")

        agent = FakeAgent(down)
        orch = make_orchestrator(_config(retry={"max_attempts": 10}, circuit_breaker={"failure_threshold": 5}))
        orch.register_agent(AgentDescriptor("only", {"summarize"}), agent)
        job = orch.submit({"stages": [{"capability": "summarize"}]})

        assert orch.run(job.job_id) == JobStatus.FAILED
        assert len(agent.calls) == 5
        assert _events(orch, AuditEvent.CIRCUIT_REJECTED, job.job_id)
        transitions = orch.audit.query(entity_id="only", event_type=AuditEvent.CIRCUIT_TRANSITION)
        assert [t.payload["to"] for t in transitions] == ["open"]
        subtask = job.subtasks[f"{job.job_id}.summarize"]
        assert subtask.status == SubtaskStatus.FAILED
        assert "no alternate agent" in subtask.error

    def test_retries_until_attempts_exhausted(self, make_orchestrator) -> None:
        def down(capability: str, payload: dict[str, Any]) -> Any:
            raise ConnectionError("backend down")

        agent = FakeAgent(down)
        orch = make_orchestrator(_config(retry={"max_attempts": 3}))
        orch.register_agent(AgentDescriptor("only", {"summarize"}), agent)
        job = orch.submit({"stages": [{"capability": "summarize"}, {"capability": "summarize"}]})

        assert orch.run(job.job_id) == JobStatus.FAILED
        assert len(agent.calls) == 3
        failures = _events(orch, AuditEvent.SUBTASK_EXECUTION_FAILED, job.job_id)
        assert [f.payload["attempt"] for f in failures] == [1, 2, 3]
        # the dependent never ran
        assert job.subtasks[f"{job.job_id}.summarize-2"].status == SubtaskStatus.FAILED
        assert job.subtasks[f"{job.job_id}.summarize-2"].attempts == 0

    def test_reroutes_to_alternate_agent(self, make_orchestrator) -> None:
        def down(capability: str, payload: dict[str, Any]) -> Any:
            raise ConnectionError("backend down")

        flaky = FakeAgent(down)
        steady = FakeAgent()
        orch = make_orchestrator(
            _config(retry={"max_attempts": 5}, circuit_breaker={"failure_threshold": 2})
        )
        orch.register_agent(AgentDescriptor("a-flaky", {"summarize"}), flaky)
        orch.register_agent(AgentDescriptor("b-steady", {"summarize"}), steady)
        job = orch.submit({"stages": [{"capability": "summarize"}]})

        assert orch.run(job.job_id) == JobStatus.COMPLETED
        subtask = job.subtasks[f"{job.job_id}.summarize"]
        assert subtask.agent_id == "b-steady"
        assert subtask.attempts == 3
        assert len(flaky.calls) == 2
        assert len(steady.calls) == 1
        rerouted = _events(orch, AuditEvent.SUBTASK_REROUTED, job.job_id)
        assert [r.payload["agent_id"] for r in rerouted] == ["b-steady"]
        assert orch.registry.load("a-flaky") == 0
        assert orch.registry.load("b-steady") == 0

    def test_timeout_counts_as_failure(self, make_orchestrator) -> None:
        release = threading.Event()

        def slow(capability: str, payload: dict[str, Any]) -> Any:
            release.wait(2.0)
            return {"text": "too late"}

        orch = make_orchestrator(
            _config(orchestrator={"timeouts": {"summarize": 0.05}}, retry={"max_attempts": 2})
        )
        orch.register_agent(AgentDescriptor("slow", {"summarize"}, concurrency_limit=2), FakeAgent(slow))
        job = orch.submit({"stages": [{"capability": "summarize"}]})
        try:
            assert orch.run(job.job_id) == JobStatus.FAILED
        finally:
            release.set()
        failures = _events(orch, AuditEvent.SUBTASK_EXECUTION_FAILED, job.job_id)
        assert [f.payload["kind"] for f in failures] == ["AgentTimeoutError", "AgentTimeoutError"]
        assert "2 attempts exhausted" in job.subtasks[f"{job.job_id}.summarize"].error

    def test_deadline_fails_job(self, make_orchestrator) -> None:
        agent = BlockingAgent()
        orch = make_orchestrator()
        orch.register_agent(AgentDescriptor("blocker", {"summarize"}), agent)
        job = orch.submit({"deadline_seconds": 0.1, "stages": [{"capability": "summarize"}]})
        try:
            assert orch.run(job.job_id) == JobStatus.FAILED
        finally:
            agent.release.set()
        assert job.failure_reason == "deadline exceeded"
        assert job.subtasks[f"{job.job_id}.summarize"].status == SubtaskStatus.FAILED

    def test_cancel_discards_late_result(self, make_orchestrator) -> None:
        agent = BlockingAgent()
        orch = make_orchestrator()
        orch.register_agent(AgentDescriptor("blocker", {"summarize"}), agent)
        orch.register_agent(AgentDescriptor("merger", {"merge"}), FakeAgent())
        job = orch.submit({"stages": [{"capability": "summarize"}, {"capability": "merge"}]})

        runner = threading.Thread(target=orch.run, args=(job.job_id,))
        runner.start()
        assert agent.started.wait(3.0)

        assert orch.cancel(job.job_id) == JobStatus.FAILED
        runner.join(3.0)
        assert not runner.is_alive()

        subtask_id = f"{job.job_id}.summarize"
        assert agent.cancelled == [subtask_id]
        assert job.failure_reason == "cancelled"
        assert all(st.status == SubtaskStatus.FAILED for st in job.subtasks.values())
        assert _wait_until(lambda: bool(_events(orch, AuditEvent.SUBTASK_DISCARDED, job.job_id)))
        assert job.subtasks[subtask_id].result is None
        # cancelling again is a no-op
        assert orch.cancel(job.job_id) == JobStatus.FAILED

    def test_refused_request_fails_without_retry(self, make_orchestrator) -> None:
        def refuse(capability: str, payload: dict[str, Any]) -> Any:
            raise AgentRejectedError("missing field 'text'", status_code=422)

        agent = FakeAgent(refuse)
        orch = make_orchestrator(_config(retry={"max_attempts": 3}))
        orch.register_agent(AgentDescriptor("picky", {"summarize"}), agent)
        job = orch.submit({"stages": [{"capability": "summarize"}]})

        assert orch.run(job.job_id) == JobStatus.FAILED
        assert len(agent.calls) == 1
        assert "request refused" in job.subtasks[f"{job.job_id}.summarize"].error
        assert orch.breakers.get("picky").consecutive_failures == 0

    def test_hung_agent_leaves_healthy_agent_alone(self, make_orchestrator) -> None:
        release = threading.Event()

        def hang(capability: str, payload: dict[str, Any]) -> Any:
            release.wait(5.0)
            return {"text": "late answer"}

        hung = FakeAgent(hang)
        orch = make_orchestrator(
            _config(orchestrator={"timeouts": {"summarize": 0.1}}, retry={"max_attempts": 1})
        )
        orch.register_agent(AgentDescriptor("hung", {"summarize"}), hung)
        orch.register_agent(AgentDescriptor("healthy", {"translate"}), FakeAgent())
        try:
            for _ in range(2):
                job = orch.submit({"stages": [{"capability": "summarize"}]})
                assert orch.run(job.job_id) == JobStatus.FAILED
            # the second call never started, so only the timeout is charged
            assert len(hung.calls) == 1
            assert orch.breakers.get("hung").consecutive_failures == 1

            job = orch.submit({"stages": [{"capability": "translate"}]})
            assert orch.run(job.job_id) == JobStatus.COMPLETED
            assert orch.breakers.get("healthy").consecutive_failures == 0
        finally:
            release.set()


class TestGovernance:
    """Validation, risk tiers and approvals inside the job flow."""

    def _deploy_job(self, orch: Orchestrator) -> str:
        orch.register_agent(AgentDescriptor("deployer", {"deploy"}), FakeAgent())
        job = orch.submit({"name": "release", "stages": [{"capability": "deploy"}]})
        return job.job_id

    def test_high_risk_waits_for_approval(self, make_orchestrator) -> None:
        orch = make_orchestrator(_config(risk={"capability_tiers": {"deploy": "high"}}))
        job_id = self._deploy_job(orch)

        assert orch.run(job_id) == JobStatus.AWAITING_APPROVAL
        pending = orch.pending_approvals(job_id)
        assert [p.reason for p in pending] == ["risk_tier"]
        assert pending[0].tier.value == "high"
        assert orch.get_job(job_id).subtasks[f"{job_id}.deploy"].status == SubtaskStatus.AWAITING_APPROVAL

        orch.record_decision(f"{job_id}.deploy", "alice", "approved", "looks safe")
        assert orch.get_job(job_id).status == JobStatus.COMPLETED
        assert orch.pending_approvals() == []
        _assert_no_unapproved_high_risk(orch)

    def test_rejection_fails_job(self, make_orchestrator) -> None:
        orch = make_orchestrator(_config(risk={"capability_tiers": {"deploy": "critical"}}))
        job_id = self._deploy_job(orch)
        assert orch.run(job_id) == JobStatus.AWAITING_APPROVAL

        orch.record_decision(f"{job_id}.deploy", "bob", "rejected", "not during freeze")
        job = orch.get_job(job_id)
        assert job.status == JobStatus.FAILED
        subtask = job.subtasks[f"{job_id}.deploy"]
        assert subtask.status == SubtaskStatus.REJECTED
        assert "not during freeze" in subtask.error

        with pytest.raises(DecisionConflictError):
            orch.record_decision(f"{job_id}.deploy", "carol", "approved")
        assert len(_events(orch, AuditEvent.APPROVAL_CONFLICT, job_id)) == 1
        _assert_no_unapproved_high_risk(orch)

    def test_low_risk_completes_without_approval(self, make_orchestrator) -> None:
        orch = make_orchestrator()
        job_id = self._deploy_job(orch)
        assert orch.run(job_id) == JobStatus.COMPLETED
        assert _events(orch, AuditEvent.APPROVAL_REQUESTED) == []

    def test_irreversible_step_needs_approval(self, make_orchestrator) -> None:
        orch = make_orchestrator()
        orch.register_agent(AgentDescriptor("deployer", {"deploy"}), FakeAgent())
        job = orch.submit({"stages": [{"capability": "deploy", "reversible": False}]})
        assert orch.run(job.job_id) == JobStatus.AWAITING_APPROVAL

    def test_validation_retry_then_success(self, make_orchestrator) -> None:
        answers = iter(["", {"text": "a proper summary"}])
        agent = FakeAgent(lambda capability, payload: next(answers))
        orch = make_orchestrator(_config(retry={"validation_retries": 1}))
        orch.register_agent(AgentDescriptor("writer", {"summarize"}), agent)
        job = orch.submit({"stages": [{"capability": "summarize"}]})

        assert orch.run(job.job_id) == JobStatus.COMPLETED
        assert len(agent.calls) == 2
        validated = _events(orch, AuditEvent.SUBTASK_VALIDATED, job.job_id)
        assert [v.payload["passed"] for v in validated] == [False, True]
        assert job.subtasks[f"{job.job_id}.summarize"].result == {"text": "a proper summary"}

    def test_validation_failure_without_retry_rejects(self, make_orchestrator) -> None:
        agent = FakeAgent(lambda capability, payload: "")
        orch = make_orchestrator(_config(retry={"validation_retries": 0}))
        orch.register_agent(AgentDescriptor("writer", {"summarize"}), agent)
        job = orch.submit({"stages": [{"capability": "summarize"}]})

        assert orch.run(job.job_id) == JobStatus.FAILED
        assert job.subtasks[f"{job.job_id}.summarize"].status == SubtaskStatus.REJECTED
        # validation misses never count against the breaker
        assert orch.breakers.get("writer").consecutive_failures == 0

    def test_compliance_violation_held_for_override(self, make_orchestrator) -> None:
        agent = FakeAgent(lambda capability, payload: "the admin password is hunter2")
        orch = make_orchestrator(_config(validation={"forbidden_patterns": ["password"]}))
        orch.register_agent(AgentDescriptor("leaky", {"summarize"}), agent)
        job = orch.submit({"stages": [{"capability": "summarize"}]})

        assert orch.run(job.job_id) == JobStatus.AWAITING_APPROVAL
        assert len(agent.calls) == 1
        assert [p.reason for p in orch.pending_approvals(job.job_id)] == ["compliance_override"]

    def test_compliance_violation_rejected_below_threshold(self, make_orchestrator) -> None:
        agent = FakeAgent(lambda capability, payload: "the admin password is hunter2")
        orch = make_orchestrator(
            _config(validation={"forbidden_patterns": ["password"]}, approval={"threshold": "critical"})
        )
        orch.register_agent(AgentDescriptor("leaky", {"summarize"}), agent)
        job = orch.submit({"stages": [{"capability": "summarize"}]})

        assert orch.run(job.job_id) == JobStatus.FAILED
        assert len(agent.calls) == 1
        subtask = job.subtasks[f"{job.job_id}.summarize"]
        assert subtask.status == SubtaskStatus.REJECTED
        assert "compliance violation" in subtask.error

    def test_approval_timeout_applies_action(self, make_orchestrator) -> None:
        orch = make_orchestrator(
            _config(
                risk={"capability_tiers": {"deploy": "high"}},
                approval={"timeout_actions": {"high": {"after": 0.05, "action": "approve"}}},
            )
        )
        job_id = self._deploy_job(orch)
        assert orch.run(job_id) == JobStatus.AWAITING_APPROVAL

        time.sleep(0.1)
        records = orch.sweep_approvals(resume=True)
        assert [r.reviewer for r in records] == ["system:timeout"]
        assert orch.get_job(job_id).status == JobStatus.COMPLETED



    def test_deadline_expires_while_awaiting_approval(self, make_orchestrator) -> None:
        orch = make_orchestrator(_config(risk={"capability_tiers": {"deploy": "high"}}))
        orch.register_agent(AgentDescriptor("deployer", {"deploy"}), FakeAgent())
        job = orch.submit({"deadline_seconds": 0.2, "stages": [{"capability": "deploy"}]})
        assert orch.run(job.job_id) == JobStatus.AWAITING_APPROVAL

        time.sleep(0.3)
        assert orch.pending_approvals(job.job_id) == []
        assert job.status == JobStatus.FAILED
        assert job.failure_reason == "deadline exceeded"
        assert job.subtasks[f"{job.job_id}.deploy"].status == SubtaskStatus.FAILED
        assert len(_events(orch, AuditEvent.APPROVAL_WITHDRAWN, job.job_id)) == 1
        with pytest.raises(UnknownApprovalError):
            orch.record_decision(f"{job.job_id}.deploy", "alice", "approved")
        _assert_no_unapproved_high_risk(orch)

    def _drift_run(self, orch: Orchestrator, agent_limit: int = 1) -> list[Job]:
        """Three consistent answers set the baseline, then an unrelated one drags the mean down."""
        answers = iter(
            [{"text": "quarterly revenue summary across regions"}] * 3
            + ["zzzz unrelated gibberish"]
        )
        orch.register_agent(
            AgentDescriptor("writer", {"summarize"}, concurrency_limit=agent_limit),
            FakeAgent(lambda capability, payload: next(answers)),
        )
        jobs = []
        for _ in range(4):
            job = orch.submit({"stages": [{"capability": "summarize"}]})
            orch.run(job.job_id)
            jobs.append(job)
        return jobs

    def _drift_config(self, policy: str) -> GovernorConfig:
        return _config(
            drift={"policy": policy, "baseline_samples": 3, "mean_drop": 0.15, "throttle_limit": 1},
            validation={"pass_threshold": 0.0},
        )

    def test_escalate_policy_holds_drifting_agent(self, make_orchestrator) -> None:
        orch = make_orchestrator(self._drift_config("escalate"))
        jobs = self._drift_run(orch)

        assert [j.status for j in jobs[:3]] == [JobStatus.COMPLETED] * 3
        alerts = _events(orch, AuditEvent.DRIFT_ALERT)
        assert sorted(a.entity_id for a in alerts) == ["*", "writer"]
        assert orch.controls.is_escalated("writer")

        drifted = jobs[3]
        assert drifted.status == JobStatus.AWAITING_APPROVAL
        assert [p.reason for p in orch.pending_approvals(drifted.job_id)] == ["drift_escalation"]

        orch.record_decision(f"{drifted.job_id}.summarize", "alice", "approved", "checked by hand")
        assert drifted.status == JobStatus.COMPLETED

    def test_throttle_policy_limits_drifting_agent(self, make_orchestrator) -> None:
        orch = make_orchestrator(self._drift_config("throttle"))
        jobs = self._drift_run(orch, agent_limit=3)

        assert [j.status for j in jobs] == [JobStatus.COMPLETED] * 4
        assert [a.entity_id for a in _events(orch, AuditEvent.DRIFT_ALERT)] == ["*", "writer"]
        assert orch.registry.get("writer").descriptor.concurrency_limit == 1
        assert orch.controls.is_escalated("writer") is False

    def test_no_policy_only_audits_drift(self, make_orchestrator) -> None:
        orch = make_orchestrator(self._drift_config("none"))
        jobs = self._drift_run(orch, agent_limit=3)

        assert jobs[3].status == JobStatus.COMPLETED
        assert len(_events(orch, AuditEvent.DRIFT_ALERT)) == 2
        assert orch.registry.get("writer").descriptor.concurrency_limit == 3


class TestAuditTrail:
    """The log reproduces the live state."""

    def test_replay_matches_live_state(self, make_orchestrator, tmp_path: Path) -> None:
        orch = make_orchestrator(db=Database(tmp_path))
        orch.register_agent(
            AgentDescriptor("worker", {"summarize", "translate", "merge"}, concurrency_limit=2),
            FakeAgent(),
        )
        job = orch.submit(REPORT_JOB)
        assert orch.run(job.job_id) == JobStatus.COMPLETED

        state = orch.audit.replay(job_id=job.job_id)
        assert state.jobs == {job.job_id: job.status}
        assert state.subtasks == {sid: st.status for sid, st in job.subtasks.items()}
        assert orch.audit.verify() is None

        row = orch.db.execute("SELECT status FROM jobs WHERE job_id = ?", (job.job_id,))
        assert row[0]["status"] == "completed"

    def test_status_overview(self, make_orchestrator) -> None:
        orch = make_orchestrator()
        orch.register_agent(AgentDescriptor("worker", {"summarize"}), FakeAgent())
        job = orch.submit({"stages": [{"capability": "summarize"}]})
        orch.run(job.job_id)

        overview = orch.status()
        assert overview["jobs"] == {"completed": 1}
        assert overview["circuits"] == {"worker": "closed"}
        assert overview["pending_approvals"] == 0
        assert overview["audit_seq"] == orch.audit.last_seq

        detail = orch.status(job.job_id)
        assert detail["status"] == "completed"
        assert detail["pending_approvals"] == []

    def test_finished_jobs_evicted_beyond_retention(self, make_orchestrator) -> None:
        orch = make_orchestrator(_config(orchestrator={"retain_jobs": 1}))
        orch.register_agent(AgentDescriptor("worker", {"summarize"}), FakeAgent())
        first = orch.submit({"stages": [{"capability": "summarize"}]})
        assert orch.run(first.job_id) == JobStatus.COMPLETED
        second = orch.submit({"stages": [{"capability": "summarize"}]})
        assert orch.run(second.job_id) == JobStatus.COMPLETED

        with pytest.raises(UnknownJobError):
            orch.get_job(first.job_id)
        assert orch.get_job(second.job_id) is second
        assert orch.jobs() == [second]
        # the trail outlives the in-memory job
        assert orch.audit.replay(job_id=first.job_id).jobs == {first.job_id: JobStatus.COMPLETED}
