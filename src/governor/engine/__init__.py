"""Governed multi-agent orchestration engine."""

from governor.engine.circuit import BreakerBoard, CircuitBreaker
from governor.engine.decomposer import TaskGraph, decompose
from governor.engine.executor import AgentExecutor
from governor.engine.orchestrator import Orchestrator
from governor.engine.registry import AgentRecord, AgentRegistry

__all__ = [
    "AgentExecutor",
    "AgentRecord",
    "AgentRegistry",
    "BreakerBoard",
    "CircuitBreaker",
    "Orchestrator",
    "TaskGraph",
    "decompose",
]
