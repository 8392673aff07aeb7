"""Supervisor validator: rule checks plus a fuzzy consistency score."""

from __future__ import annotations

import json
import re
import threading
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from jsonschema.exceptions import best_match
from jsonschema.validators import validator_for

from governor.config import ValidationConfig
from governor.errors import ComplianceViolation, ValidationFailure
from governor.models import Subtask, ValidationReport

_STOPWORDS = {
    "the", "and", "for", "from", "with", "this", "that",
    "are", "was", "will", "can", "has", "have", "been",
    "into", "than", "then", "they", "them", "their", "there",
}

SHAPE_WEIGHT = 0.6
KEYWORD_WEIGHT = 0.4


@dataclass
class RuleResult:
    """Result of a single deterministic rule."""

    passed: bool
    violation: str | None = None
    compliance: bool = False  # compliance rules fail closed and are never retried


Rule = Callable[[Subtask, Any], RuleResult]


@dataclass
class _Sample:
    keywords: frozenset[str]
    keys: frozenset[str] | None  # None for non-mapping outputs
    length: int


def _text_of(output: Any) -> str:
    if isinstance(output, str):
        return output
    return json.dumps(output, sort_keys=True, default=str)


def _extract_keywords(text: str) -> frozenset[str]:
    words = re.findall(r"\w+", text.lower())
    return frozenset(w for w in words if len(w) >= 4 and w not in _STOPWORDS)


def _jaccard(a: frozenset[str], b: frozenset[str]) -> float:
    if not a and not b:
        return 1.0
    return len(a & b) / len(a | b)


def _sample(output: Any) -> _Sample:
    text = _text_of(output)
    keys = frozenset(str(k) for k in output) if isinstance(output, Mapping) else None
    return _Sample(keywords=_extract_keywords(text), keys=keys, length=len(text))


def _similarity(current: _Sample, prior: _Sample) -> float:
    if (current.keys is None) != (prior.keys is None):
        shape = 0.0
    elif current.keys is not None and prior.keys is not None:
        shape = _jaccard(current.keys, prior.keys)
    else:
        longest = max(current.length, prior.length)
        shape = min(current.length, prior.length) / longest if longest else 1.0
    return SHAPE_WEIGHT * shape + KEYWORD_WEIGHT * _jaccard(current.keywords, prior.keywords)


class SupervisorValidator:
    """
    Checks a specialist's output before it is accepted.

    Fails closed: any rule violation forces ``passed=False`` whatever the
    fuzzy score. The fuzzy score is the best similarity to prior accepted
    outputs for the same capability (``cold_start_score`` with no history).
    """

    def __init__(self, config: ValidationConfig | None = None) -> None:
        self.config = config or ValidationConfig()
        self._forbidden = [re.compile(p, re.IGNORECASE) for p in self.config.forbidden_patterns]
        self._schemas = {
            capability: validator_for(schema)(schema)
            for capability, schema in self.config.output_schemas.items()
        }
        self._rules: list[Rule] = [self.check_not_empty, self.check_schema, self.check_forbidden]
        self._history: dict[str, deque[_Sample]] = {}
        self._lock = threading.Lock()

    def add_rule(self, rule: Rule) -> None:
        """Register an extra deterministic rule."""
        self._rules.append(rule)

    def check_not_empty(self, subtask: Subtask, output: Any) -> RuleResult:
        if output is None or (isinstance(output, str | list | dict) and not output):
            return RuleResult(passed=False, violation="empty output")
        return RuleResult(passed=True)

    def check_schema(self, subtask: Subtask, output: Any) -> RuleResult:
        validator = self._schemas.get(subtask.capability)
        if validator is None:
            return RuleResult(passed=True)
        first = best_match(validator.iter_errors(output))
        if first is None:
            return RuleResult(passed=True)
        where = "/".join(str(p) for p in first.absolute_path) or "output"
        return RuleResult(
            passed=False,
            violation=f"{subtask.capability} output does not match its schema at {where}: {first.message}",
        )

    def check_forbidden(self, subtask: Subtask, output: Any) -> RuleResult:
        text = _text_of(output)
        for pattern in self._forbidden:
            if pattern.search(text):
                return RuleResult(
                    passed=False,
                    violation=f"forbidden content matched {pattern.pattern!r}",
                    compliance=True,
                )
        return RuleResult(passed=True)

    def score(self, capability: str, output: Any) -> float:
        with self._lock:
            history = list(self._history.get(capability, ()))
        if not history:
            return self.config.cold_start_score
        current = _sample(output)
        return round(max(_similarity(current, prior) for prior in history), 6)

    def validate(self, subtask: Subtask, output: Any) -> ValidationReport:
        violations: list[str] = []
        compliance = False
        for rule in self._rules:
            result = rule(subtask, output)
            if not result.passed:
                violations.append(result.violation or rule.__name__)
                compliance = compliance or result.compliance

        score = self.score(subtask.capability, output)
        passed = not violations and score >= self.config.pass_threshold
        if not violations and not passed:
            violations.append(
                f"consistency score {score:.2f} below threshold {self.config.pass_threshold:.2f}"
            )
        return ValidationReport(
            score=score, passed=passed, violations=violations, compliance_violation=compliance
        )

    def remember(self, capability: str, output: Any) -> None:
        """Record an accepted output as reference for later scoring."""
        sample = _sample(output)
        with self._lock:
            history = self._history.setdefault(
                capability, deque(maxlen=self.config.history_size)
            )
            history.append(sample)


def as_failure(report: ValidationReport) -> ValidationFailure:
    """The error describing a failed report; compliance misses get ``ComplianceViolation``."""
    details = "; ".join(report.violations)
    if report.compliance_violation:
        return ComplianceViolation(
            f"compliance violation: {details}", violations=report.violations, score=report.score
        )
    return ValidationFailure(
        f"validation failed: {details}", violations=report.violations, score=report.score
    )
