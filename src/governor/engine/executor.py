"""Agent Executor - Invokes agents through their circuit breaker with timeout and backoff."""

from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from governor.agents.base import CancellableAgent
from governor.config import OrchestratorConfig, RetryConfig
from governor.engine.circuit import BreakerBoard
from governor.engine.registry import AgentRecord, AgentRegistry
from governor.errors import (
    AgentBusyError,
    AgentRejectedError,
    AgentTimeoutError,
    TransientExecutionError,
)

logger = logging.getLogger(__name__)


class AgentExecutor:
    """
    Runs single agent calls for the orchestrator.

    Each agent gets its own call pool sized to its registered concurrency
    limit, so a hung agent can only exhaust its own threads. A call is
    admitted by the agent's breaker and timed from the moment it starts
    running; a call that cannot start before the timeout is given back to
    the breaker uncharged and reported as ``AgentBusyError``. A timed-out
    call cannot be killed; the agent is asked to cancel if it supports it
    and the thread is abandoned.
    """

    def __init__(
        self,
        registry: AgentRegistry,
        breakers: BreakerBoard,
        config: OrchestratorConfig | None = None,
        retry: RetryConfig | None = None,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.registry = registry
        self.breakers = breakers
        self.config = config or OrchestratorConfig()
        self.retry = retry or RetryConfig()
        self._rng = rng
        self._lock = threading.Lock()
        self._pools: dict[str, ThreadPoolExecutor] = {}

    def _pool_for(self, record: AgentRecord) -> ThreadPoolExecutor:
        with self._lock:
            pool = self._pools.get(record.agent_id)
            if pool is None:
                pool = ThreadPoolExecutor(
                    max_workers=max(1, record.base_limit),
                    thread_name_prefix=f"governor-call-{record.agent_id}",
                )
                self._pools[record.agent_id] = pool
            return pool

    def invoke(
        self,
        agent_id: str,
        capability: str,
        payload: dict[str, Any],
        subtask_id: str,
    ) -> tuple[Any, float]:
        """
        Call one agent once.

        Returns:
            (output, duration_seconds)

        Raises:
            CircuitOpenError: the breaker refused the call; the agent was not invoked
            AgentBusyError: the call never started; the breaker is not charged
            AgentTimeoutError: the call exceeded the capability timeout
            AgentRejectedError: the agent refused the request; the breaker is not charged
            TransientExecutionError: any other agent failure
        """
        record = self.registry.get(agent_id)
        if record is None:
            raise TransientExecutionError(f"agent {agent_id} is no longer registered")

        breaker = self.breakers.get(agent_id)
        breaker.before_call()

        timeout = self.config.timeout_for(capability)
        started = threading.Event()
        began: list[float] = []

        def call() -> Any:
            began.append(time.monotonic())
            started.set()
            return record.agent.execute(capability, payload)

        try:
            future = self._pool_for(record).submit(call)
        except RuntimeError as e:
            breaker.release_trial()
            raise TransientExecutionError(f"{agent_id} is shutting down", agent_id=agent_id) from e

        if not started.wait(timeout) and future.cancel():
            breaker.release_trial()
            raise AgentBusyError(
                f"{agent_id} had no free call slot within {timeout:g}s",
                agent_id=agent_id,
                timeout=timeout,
            )
        started.wait()

        try:
            output = future.result(timeout=max(0.0, began[0] + timeout - time.monotonic()))
        except TimeoutError as e:
            self.cancel_call(agent_id, subtask_id)
            breaker.record_failure()
            raise AgentTimeoutError(
                f"{agent_id} did not answer {capability} within {timeout:g}s",
                agent_id=agent_id,
                timeout=timeout,
            ) from e
        except AgentRejectedError:
            # the agent answered; the request was at fault
            breaker.record_success()
            raise
        except TransientExecutionError:
            breaker.record_failure()
            raise
        except Exception as e:
            breaker.record_failure()
            raise TransientExecutionError(
                f"{agent_id} failed: {type(e).__name__}: {e}", agent_id=agent_id
            ) from e

        breaker.record_success()
        return output, time.monotonic() - began[0]

    def cancel_call(self, agent_id: str, subtask_id: str) -> bool:
        """Ask an agent to abandon a subtask, if it knows how."""
        record = self.registry.get(agent_id)
        if record is None or not isinstance(record.agent, CancellableAgent):
            return False
        try:
            record.agent.cancel(subtask_id)
        except Exception as e:
            logger.warning("Cancel of %s on %s failed: %s", subtask_id, agent_id, e)
            return False
        return True

    def retire(self, agent_id: str) -> None:
        """Drop a deregistered agent's call pool. Running calls are left to finish."""
        with self._lock:
            pool = self._pools.pop(agent_id, None)
        if pool is not None:
            pool.shutdown(wait=False, cancel_futures=True)

    def backoff_delay(self, attempt: int) -> float:
        """Exponential backoff with proportional jitter for the given attempt (1-based)."""
        cfg = self.retry
        delay = min(cfg.base_delay * (cfg.multiplier ** (attempt - 1)), cfg.max_delay)
        if cfg.jitter:
            delay += delay * cfg.jitter * self._rng()
        return delay

    def wait_backoff(self, attempt: int, stop: threading.Event | None = None) -> bool:
        """Sleep before the next attempt. Returns False if ``stop`` was set meanwhile."""
        delay = self.backoff_delay(attempt)
        logger.debug("Backing off %.2fs after attempt %d", delay, attempt)
        if stop is None:
            time.sleep(delay)
            return True
        return not stop.wait(delay)

    def shutdown(self) -> None:
        with self._lock:
            pools = list(self._pools.values())
            self._pools.clear()
        for pool in pools:
            pool.shutdown(wait=False, cancel_futures=True)
