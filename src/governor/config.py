"""Governor configuration, supplied explicitly at startup.

Loaded from TOML (``governor.toml`` or ``~/.governor/config.toml``) or built
in code. Every section is a pydantic model that forbids unknown keys; any
validation error surfaces as ``ConfigurationError``.
"""

from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Any, Literal

from jsonschema import SchemaError
from jsonschema.validators import validator_for
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from governor.errors import ConfigurationError
from governor.models import RiskTier

DEFAULT_DATA_DIR = Path.home() / ".governor"


def _describe(error: ValidationError) -> str:
    problems = []
    for err in error.errors():
        where = ".".join(str(part) for part in err["loc"]) or "config"
        problems.append(f"{where}: {err['msg']}")
    return "; ".join(problems)


class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid")

    def __init__(self, **data: Any) -> None:
        try:
            super().__init__(**data)
        except ValidationError as e:
            raise ConfigurationError(f"invalid {type(self).__name__}: {_describe(e)}") from e


class OrchestratorConfig(_Section):
    max_workers: int = Field(default=8, ge=1)
    default_timeout: float = Field(default=30.0, gt=0)
    timeouts: dict[str, float] = Field(default_factory=dict)  # capability -> seconds
    job_deadline: float | None = Field(default=None, gt=0)  # seconds, None = no deadline
    poll_interval: float = Field(default=0.05, gt=0)
    retain_jobs: int = Field(default=1000, ge=1)  # finished jobs kept in memory

    @field_validator("timeouts")
    @classmethod
    def _positive_timeouts(cls, value: dict[str, float]) -> dict[str, float]:
        for capability, seconds in value.items():
            if seconds <= 0:
                raise ValueError(f"timeout for {capability!r} must be > 0, got {seconds}")
        return value

    def timeout_for(self, capability: str) -> float:
        return self.timeouts.get(capability, self.default_timeout)


class RetryConfig(_Section):
    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=0.5, ge=0)
    max_delay: float = Field(default=10.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1.0)
    jitter: float = Field(default=0.25, ge=0.0, le=1.0)  # fraction of the delay added at random
    validation_retries: int = Field(default=1, ge=0)


class CircuitBreakerConfig(_Section):
    failure_threshold: int = Field(default=5, ge=1)
    failure_window: float = Field(default=60.0, gt=0)
    recovery_timeout: float = Field(default=30.0, ge=0)


class RiskConfig(_Section):
    capability_tiers: dict[str, RiskTier] = Field(default_factory=dict)
    impact_medium: float = 1_000.0
    impact_high: float = 10_000.0
    impact_critical: float = 100_000.0
    irreversible_tier: RiskTier = RiskTier.HIGH
    elevate_below: float = Field(default=0.6, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _ordered_impacts(self) -> RiskConfig:
        if not self.impact_medium <= self.impact_high <= self.impact_critical:
            raise ValueError("impact thresholds must be non-decreasing")
        return self


class TimeoutAction(_Section):
    after: float = Field(gt=0)  # seconds a request may wait
    action: Literal["reject", "approve"]


class ApprovalConfig(_Section):
    threshold: RiskTier = RiskTier.HIGH
    timeout_actions: dict[RiskTier, TimeoutAction] = Field(default_factory=dict)


class ValidationConfig(_Section):
    pass_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    cold_start_score: float = Field(default=0.75, ge=0.0, le=1.0)
    history_size: int = Field(default=50, ge=1)
    forbidden_patterns: list[str] = Field(default_factory=list)
    # capability -> JSON Schema the output must conform to
    output_schemas: dict[str, dict[str, Any]] = Field(default_factory=dict)
    override_via_approval: bool = False

    @field_validator("output_schemas")
    @classmethod
    def _check_schemas(cls, value: dict[str, dict[str, Any]]) -> dict[str, dict[str, Any]]:
        for capability, schema in value.items():
            try:
                validator_for(schema).check_schema(schema)
            except SchemaError as e:
                raise ValueError(f"schema for {capability!r} is invalid: {e.message}") from e
        return value


class DriftConfig(_Section):
    window: int = Field(default=20, ge=2)
    baseline_samples: int = Field(default=10, ge=1)
    mean_drop: float = Field(default=0.15, ge=0.0)
    variance_ceiling: float = Field(default=0.05, ge=0.0)
    policy: Literal["none", "throttle", "probation", "escalate"] = "none"
    throttle_limit: int = Field(default=1, ge=1)


class GovernorConfig(_Section):
    """Top-level configuration object."""

    data_dir: Path = Field(default_factory=lambda: DEFAULT_DATA_DIR)
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    approval: ApprovalConfig = Field(default_factory=ApprovalConfig)
    validation: ValidationConfig = Field(default_factory=ValidationConfig)
    drift: DriftConfig = Field(default_factory=DriftConfig)

    @field_validator("data_dir")
    @classmethod
    def _expand(cls, value: Path) -> Path:
        return value.expanduser()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GovernorConfig:
        return cls(**data)

    @classmethod
    def load(cls, path: Path | str | None = None) -> GovernorConfig:
        """Load from a TOML file; falls back to defaults when no file exists."""
        candidates = [Path(path)] if path else [
            Path.cwd() / "governor.toml",
            DEFAULT_DATA_DIR / "config.toml",
        ]
        for candidate in candidates:
            if candidate.exists():
                with open(candidate, "rb") as f:
                    try:
                        data = tomllib.load(f)
                    except tomllib.TOMLDecodeError as e:
                        raise ConfigurationError(f"{candidate}: {e}") from e
                return cls.from_dict(data)
        if path:
            raise ConfigurationError(f"configuration file not found: {path}")
        return cls()
