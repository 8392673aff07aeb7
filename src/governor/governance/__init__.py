"""Governance pipeline: validation, risk, approval and drift monitoring."""

from governor.governance.approval import ApprovalGate, ApprovalRequest
from governor.governance.consistency import GLOBAL, ConsistencyMonitor
from governor.governance.policies import (
    DriftControls,
    DriftPolicy,
    EscalatePolicy,
    ProbationPolicy,
    ThrottlePolicy,
    build_policy,
)
from governor.governance.risk import RiskClassifier, classify, impact_tier
from governor.governance.validator import RuleResult, SupervisorValidator, as_failure

__all__ = [
    "GLOBAL",
    "ApprovalGate",
    "ApprovalRequest",
    "ConsistencyMonitor",
    "DriftControls",
    "DriftPolicy",
    "EscalatePolicy",
    "ProbationPolicy",
    "RiskClassifier",
    "RuleResult",
    "SupervisorValidator",
    "ThrottlePolicy",
    "as_failure",
    "build_policy",
    "classify",
    "impact_tier",
]
