"""Error taxonomy for the governor."""

from __future__ import annotations

from typing import Any


class GovernorError(Exception):
    """Base class for all governor errors."""

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"error": type(self).__name__, "message": self.message, **self.details}


class ConfigurationError(GovernorError):
    """Invalid configuration value."""


class MalformedJobError(GovernorError):
    """Job request rejected at submission; it never enters the DAG."""


class UnknownJobError(GovernorError):
    """No job with the given id."""


class TransientExecutionError(GovernorError):
    """Timeout or network-like failure from an agent. Retried with backoff."""


class AgentTimeoutError(TransientExecutionError):
    """Agent call exceeded its per-capability timeout."""


class AgentBusyError(TransientExecutionError):
    """Agent call never started: every call slot for the agent was still occupied."""


class AgentRejectedError(GovernorError):
    """Agent refused the request itself (a caller error). Not retried."""


class CircuitOpenError(GovernorError):
    """Agent circuit is open; the call was short-circuited."""

    def __init__(self, agent_id: str, message: str | None = None) -> None:
        super().__init__(message or f"Circuit open for agent {agent_id}", agent_id=agent_id)
        self.agent_id = agent_id


class ValidationFailure(GovernorError):
    """Supervisor validator rejected a result (score or schema miss)."""


class ComplianceViolation(ValidationFailure):
    """A compliance rule matched. Never retried."""


class DecisionConflictError(GovernorError):
    """A decision was already recorded for this subtask."""


class UnknownApprovalError(GovernorError):
    """No pending approval request for this subtask."""
