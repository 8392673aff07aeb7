"""
Risk Classifier — Static Policy Rules to Risk Tier

Pure and deterministic: the same subtask and validation report always map
to the same tier, so it is testable without invoking any agent.

Rules (the highest tier wins):
- capability base tier (default low)
- irreversible real-world action -> at least ``irreversible_tier``
- declared impact magnitude against the medium/high/critical thresholds
- compliance violation -> at least high
- validator score below ``elevate_below`` -> one tier up
"""

from __future__ import annotations

from governor.config import RiskConfig
from governor.models import RiskTier, Subtask, ValidationReport


def impact_tier(impact: float, config: RiskConfig) -> RiskTier:
    if impact >= config.impact_critical:
        return RiskTier.CRITICAL
    if impact >= config.impact_high:
        return RiskTier.HIGH
    if impact >= config.impact_medium:
        return RiskTier.MEDIUM
    return RiskTier.LOW


def classify(subtask: Subtask, report: ValidationReport, config: RiskConfig) -> RiskTier:
    """Assign a risk tier to a subtask/result pair."""
    tier = RiskTier.highest(
        config.capability_tiers.get(subtask.capability, RiskTier.LOW),
        impact_tier(subtask.impact, config),
    )
    if not subtask.reversible:
        tier = RiskTier.highest(tier, config.irreversible_tier)
    if report.compliance_violation:
        tier = RiskTier.highest(tier, RiskTier.HIGH)
    if report.score < config.elevate_below:
        tier = tier.raised()
    return tier


class RiskClassifier:
    """Binds ``classify`` to a policy."""

    def __init__(self, config: RiskConfig | None = None) -> None:
        self.config = config or RiskConfig()

    def classify(self, subtask: Subtask, report: ValidationReport) -> RiskTier:
        return classify(subtask, report, self.config)
