"""Agent invocation contract and bundled agent clients."""

from governor.agents.base import Agent, CallableAgent, CancellableAgent
from governor.agents.http import HttpAgent

__all__ = ["Agent", "CallableAgent", "CancellableAgent", "HttpAgent"]
