"""
Circuit Breaker — Per-Agent Fault Isolation

CLOSED   normal operation
OPEN     fail fast; the agent is never invoked
HALF_OPEN exactly one trial call decides CLOSED or OPEN

CLOSED→OPEN after ``failure_threshold`` consecutive failures inside
``failure_window`` seconds. OPEN→HALF_OPEN once ``recovery_timeout`` has
elapsed since the last failure (checked lazily on the next call).
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from typing import Any, TypeVar

from governor.config import CircuitBreakerConfig
from governor.errors import CircuitOpenError
from governor.models import CircuitState

logger = logging.getLogger(__name__)

T = TypeVar("T")

# (agent_id, old_state, new_state, reason)
TransitionListener = Callable[[str, CircuitState, CircuitState, str], None]


class CircuitBreaker:
    """Circuit breaker for a single agent. Thread-safe."""

    def __init__(
        self,
        agent_id: str,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
        listener: TransitionListener | None = None,
    ) -> None:
        self.agent_id = agent_id
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._listener = listener
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures: deque[float] = deque()  # consecutive failure times
        self._last_failure: float | None = None
        self._trial_in_flight = False
        self.rejected = 0

    @property
    def state(self) -> CircuitState:
        with self._lock:
            change = self._maybe_half_open()
            state = self._state
        self._notify(change)
        return state

    @property
    def consecutive_failures(self) -> int:
        with self._lock:
            return len(self._failures)

    def _transition(self, new_state: CircuitState, reason: str) -> tuple[CircuitState, CircuitState, str]:
        old = self._state
        self._state = new_state
        return old, new_state, reason

    def _notify(self, change: tuple[CircuitState, CircuitState, str] | None) -> None:
        if change is None:
            return
        old, new, reason = change
        log = logger.warning if new == CircuitState.OPEN else logger.info
        log("Circuit %s: %s -> %s (%s)", self.agent_id, old.value, new.value, reason)
        if self._listener is not None:
            self._listener(self.agent_id, old, new, reason)

    def _maybe_half_open(self) -> tuple[CircuitState, CircuitState, str] | None:
        # caller holds the lock
        if self._state != CircuitState.OPEN or self._last_failure is None:
            return None
        if self._clock() - self._last_failure >= self.config.recovery_timeout:
            self._trial_in_flight = False
            return self._transition(CircuitState.HALF_OPEN, "recovery timeout elapsed")
        return None

    def would_allow(self) -> bool:
        """Non-reserving check used when choosing among agents."""
        with self._lock:
            change = self._maybe_half_open()
            allowed = self._state == CircuitState.CLOSED or (
                self._state == CircuitState.HALF_OPEN and not self._trial_in_flight
            )
        self._notify(change)
        return allowed

    def before_call(self) -> None:
        """Admit a call or raise ``CircuitOpenError``. Reserves the half-open trial."""
        with self._lock:
            change = self._maybe_half_open()
            if self._state == CircuitState.OPEN:
                admitted = False
            elif self._state == CircuitState.HALF_OPEN:
                admitted = not self._trial_in_flight
                if admitted:
                    self._trial_in_flight = True
            else:
                admitted = True
            if not admitted:
                self.rejected += 1
        self._notify(change)
        if not admitted:
            raise CircuitOpenError(self.agent_id)

    def record_success(self) -> None:
        change = None
        with self._lock:
            self._failures.clear()
            if self._state == CircuitState.HALF_OPEN:
                self._trial_in_flight = False
                change = self._transition(CircuitState.CLOSED, "trial call succeeded")
        self._notify(change)

    def record_failure(self) -> None:
        change = None
        with self._lock:
            now = self._clock()
            self._last_failure = now
            if self._state == CircuitState.HALF_OPEN:
                self._trial_in_flight = False
                change = self._transition(CircuitState.OPEN, "trial call failed")
            elif self._state == CircuitState.CLOSED:
                self._failures.append(now)
                window_start = now - self.config.failure_window
                while self._failures and self._failures[0] < window_start:
                    self._failures.popleft()
                if len(self._failures) >= self.config.failure_threshold:
                    count = len(self._failures)
                    self._failures.clear()
                    change = self._transition(
                        CircuitState.OPEN, f"{count} consecutive failures"
                    )
        self._notify(change)

    def release_trial(self) -> None:
        """Give back an admitted call that never reached the agent. No outcome is recorded."""
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._trial_in_flight = False

    def call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run ``fn`` through the breaker. Any exception counts as a failure."""
        self.before_call()
        try:
            result = fn(*args, **kwargs)
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def force_half_open(self) -> None:
        """Put the agent on probation: the next call is a single trial."""
        change = None
        with self._lock:
            if self._state != CircuitState.HALF_OPEN:
                self._trial_in_flight = False
                self._failures.clear()
                change = self._transition(CircuitState.HALF_OPEN, "probation")
        self._notify(change)

    def get_status(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "state": self.state.value,
            "consecutive_failures": self.consecutive_failures,
            "rejected": self.rejected,
        }


class BreakerBoard:
    """Lazily created breakers, one per agent, sharing config, clock and listener."""

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
        listener: TransitionListener | None = None,
    ) -> None:
        self.config = config or CircuitBreakerConfig()
        self.clock = clock
        self.listener = listener
        self._lock = threading.Lock()
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, agent_id: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(agent_id)
            if breaker is None:
                breaker = CircuitBreaker(agent_id, self.config, self.clock, self.listener)
                self._breakers[agent_id] = breaker
            return breaker

    def states(self) -> dict[str, str]:
        with self._lock:
            breakers = list(self._breakers.values())
        return {b.agent_id: b.state.value for b in breakers}
