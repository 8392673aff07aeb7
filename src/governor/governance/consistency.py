"""
Consistency Monitor — Rolling Validator Scores and Drift Alerts

Fixed sliding window per agent (plus the global ``*`` series). The baseline
is the mean of the first ``baseline_samples`` scores. An agent drifts when
its rolling mean falls more than ``mean_drop`` below baseline or its rolling
variance exceeds ``variance_ceiling``.

Alerts are edge-triggered: one alert on entering drift, one recovery on
leaving it. Statistics are updated under a per-agent lock.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import replace
from statistics import fmean, pvariance

from governor.config import DriftConfig
from governor.models import DriftStatus

logger = logging.getLogger(__name__)

GLOBAL = "*"


class _Series:
    def __init__(self, agent_id: str, window: int) -> None:
        self.lock = threading.Lock()
        self.scores: deque[float] = deque(maxlen=window)
        self.status = DriftStatus(agent_id=agent_id)
        self.baseline_scores: list[float] = []


def _mean_variance(values: deque[float]) -> tuple[float, float]:
    mean = fmean(values)
    return mean, pvariance(values, mean)


class ConsistencyMonitor:
    """Per-agent rolling statistics over validator scores."""

    def __init__(self, config: DriftConfig | None = None) -> None:
        self.config = config or DriftConfig()
        self._lock = threading.Lock()
        self._series: dict[str, _Series] = {}

    def _get_series(self, agent_id: str) -> _Series:
        with self._lock:
            series = self._series.get(agent_id)
            if series is None:
                series = _Series(agent_id, self.config.window)
                self._series[agent_id] = series
            return series

    def record(self, agent_id: str, score: float) -> DriftStatus:
        """Record one score for ``agent_id`` (and the global series)."""
        return self.observe(agent_id, score)[-1]

    def observe(self, agent_id: str, score: float) -> list[DriftStatus]:
        """Like ``record`` but returns every series touched, global first."""
        if not 0.0 <= score <= 1.0:
            raise ValueError(f"score must be in [0.0, 1.0], got {score}")
        touched = []
        if agent_id != GLOBAL:
            touched.append(self._update(self._get_series(GLOBAL), score))
        touched.append(self._update(self._get_series(agent_id), score))
        return touched

    def _update(self, series: _Series, score: float) -> DriftStatus:
        cfg = self.config
        with series.lock:
            series.scores.append(score)
            status = series.status
            if status.baseline is None:
                series.baseline_scores.append(score)
                if len(series.baseline_scores) >= cfg.baseline_samples:
                    status.baseline = fmean(series.baseline_scores)

            mean, variance = _mean_variance(series.scores)
            reason = ""
            drifting = False
            if status.baseline is not None:
                if status.baseline - mean > cfg.mean_drop:
                    drifting = True
                    reason = f"mean {mean:.3f} fell below baseline {status.baseline:.3f}"
                elif variance > cfg.variance_ceiling:
                    drifting = True
                    reason = f"variance {variance:.4f} above ceiling {cfg.variance_ceiling:.4f}"

            alert = drifting and not status.drifting
            recovered = status.drifting and not drifting
            series.status = replace(
                status,
                mean=mean,
                variance=variance,
                samples=status.samples + 1,
                drifting=drifting,
                alert=alert,
                recovered=recovered,
                reason=reason,
            )
            result = series.status

        if alert:
            logger.warning("Drift alert for %s: %s", result.agent_id, reason)
        elif recovered:
            logger.info("Drift cleared for %s", result.agent_id)
        return result

    def get_drift(self, agent_id: str) -> DriftStatus:
        with self._lock:
            series = self._series.get(agent_id)
        if series is None:
            return DriftStatus(agent_id=agent_id)
        with series.lock:
            return replace(series.status)

    def snapshot(self) -> dict[str, DriftStatus]:
        with self._lock:
            ids = list(self._series)
        return {agent_id: self.get_drift(agent_id) for agent_id in sorted(ids)}
