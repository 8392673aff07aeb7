"""Drift policies: what the orchestrator does when an agent drifts."""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING

from governor.config import DriftConfig
from governor.models import DriftStatus

if TYPE_CHECKING:
    from governor.engine.circuit import BreakerBoard
    from governor.engine.registry import AgentRegistry


class DriftControls:
    """The levers a drift policy may pull."""

    def __init__(self, registry: AgentRegistry, breakers: BreakerBoard) -> None:
        self.registry = registry
        self.breakers = breakers
        self._lock = threading.Lock()
        self._escalated: set[str] = set()

    def escalate(self, agent_id: str) -> None:
        with self._lock:
            self._escalated.add(agent_id)

    def clear_escalation(self, agent_id: str) -> None:
        with self._lock:
            self._escalated.discard(agent_id)

    def is_escalated(self, agent_id: str) -> bool:
        with self._lock:
            return agent_id in self._escalated


class DriftPolicy:
    """Base policy: alerts are audited and logged, dispatch is unchanged."""

    name = "none"

    def on_drift(self, agent_id: str, status: DriftStatus, controls: DriftControls) -> None:
        pass

    def on_recover(self, agent_id: str, status: DriftStatus, controls: DriftControls) -> None:
        pass


class ThrottlePolicy(DriftPolicy):
    """Reduce concurrency to the drifting agent until it recovers."""

    name = "throttle"

    def __init__(self, limit: int = 1) -> None:
        self.limit = limit

    def on_drift(self, agent_id: str, status: DriftStatus, controls: DriftControls) -> None:
        controls.registry.set_concurrency_limit(agent_id, self.limit)

    def on_recover(self, agent_id: str, status: DriftStatus, controls: DriftControls) -> None:
        controls.registry.set_concurrency_limit(agent_id, None)


class ProbationPolicy(DriftPolicy):
    """Force the agent's breaker half-open: one trial call decides its fate."""

    name = "probation"

    def on_drift(self, agent_id: str, status: DriftStatus, controls: DriftControls) -> None:
        controls.breakers.get(agent_id).force_half_open()


class EscalatePolicy(DriftPolicy):
    """Route every result from the agent to human review until it recovers."""

    name = "escalate"

    def on_drift(self, agent_id: str, status: DriftStatus, controls: DriftControls) -> None:
        controls.escalate(agent_id)

    def on_recover(self, agent_id: str, status: DriftStatus, controls: DriftControls) -> None:
        controls.clear_escalation(agent_id)


def build_policy(config: DriftConfig) -> DriftPolicy:
    if config.policy == "throttle":
        return ThrottlePolicy(config.throttle_limit)
    if config.policy == "probation":
        return ProbationPolicy()
    if config.policy == "escalate":
        return EscalatePolicy()
    return DriftPolicy()
