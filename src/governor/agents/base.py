"""Agent invocation contract consumed by the orchestrator."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class Agent(Protocol):
    """Uniform call into an external specialist: ``execute(capability, payload)``.

    Implementations raise on failure. ``TransientExecutionError`` marks a
    retryable failure; any other exception is treated as transient too.
    """

    def execute(self, capability: str, payload: dict[str, Any]) -> Any: ...


@runtime_checkable
class CancellableAgent(Agent, Protocol):
    def cancel(self, subtask_id: str) -> None: ...


class CallableAgent:
    """Adapts a plain function ``fn(capability, payload)`` to the Agent contract."""

    def __init__(self, fn: Callable[[str, dict[str, Any]], Any]) -> None:
        self._fn = fn

    def execute(self, capability: str, payload: dict[str, Any]) -> Any:
        return self._fn(capability, payload)

    def __repr__(self) -> str:
        return f"CallableAgent({getattr(self._fn, '__name__', self._fn)!r})"
