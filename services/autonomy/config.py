# services/autonomy/config.py

from __future__ import annotations

import json
import logging
import operator
import os
from pathlib import Path
from typing import Any, Callable, Dict, List, Literal, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from services.autonomy.types import Severity

logger = logging.getLogger(__name__)

Comparison = Literal[">=", ">", "<=", "<", "=="]
ParamValue = Union[str, int, float, bool, None]

_OPERATORS: Dict[str, Callable[[float, float], bool]] = {
    ">=": operator.ge,
    ">": operator.gt,
    "<=": operator.le,
    "<": operator.lt,
    "==": operator.eq,
}

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parents[2] / "config" / "autonomy.json"


class AutonomyConfigError(RuntimeError):
    pass


def compare(op: str, left: float, right: float) -> bool:
    fn = _OPERATORS.get(op)
    if fn is None:
        raise AutonomyConfigError(f"unknown comparison operator: {op!r}")
    return bool(fn(left, right))


# ============================================================
# SIGNALS
# ============================================================


class ThresholdSpec(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    severity: Severity
    op: Comparison = ">="
    value: float

    def matches(self, observed: float) -> bool:
        return compare(self.op, observed, self.value)


class SignalSpec(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(min_length=1)
    unit: str = ""
    query: Optional[str] = None
    window_seconds: int = Field(default=0, ge=0)
    thresholds: List[ThresholdSpec] = Field(default_factory=list)
    # Only used by the static reader (local runs, demos).
    static_value: Optional[float] = None

    @field_validator("thresholds")
    @classmethod
    def _one_threshold_per_severity(cls, v: List[ThresholdSpec]) -> List[ThresholdSpec]:
        seen = set()
        for t in v:
            if t.severity in seen:
                raise ValueError(f"duplicate threshold for severity {t.severity.value}")
            seen.add(t.severity)
        return v

    def threshold_for(self, severity: Severity) -> Optional[ThresholdSpec]:
        for t in self.thresholds:
            if t.severity == severity:
                return t
        return None


# ============================================================
# RULE TABLE / POLICY
# ============================================================


class RemediationRuleSpec(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(min_length=1)
    signal: str = Field(min_length=1)
    min_severity: Severity = Severity.LOW
    action_kind: str = Field(min_length=1)
    params: Dict[str, ParamValue] = Field(default_factory=dict)


class ConstraintSpec(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    signal: str = Field(min_length=1)
    op: Comparison
    value: float

    def holds(self, state: Mapping[str, float]) -> bool:
        observed = state.get(self.signal)
        if observed is None:
            return False
        return compare(self.op, float(observed), self.value)


class PolicyRuleSpec(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(min_length=1)
    # fnmatch-style glob over action kinds, e.g. "scale_*"
    applies_to: str = Field(min_length=1)
    constraints: List[ConstraintSpec] = Field(default_factory=list)
    max_actions_per_window: int = Field(ge=0)
    rate_window_seconds: int = Field(default=3600, gt=0)
    cooldown_seconds: int = Field(default=0, ge=0)


# ============================================================
# EXECUTION
# ============================================================


class CapacitySpec(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    workers_initial: int = Field(default=8, ge=0)
    workers_floor: int = Field(default=2, ge=0)
    workers_ceiling: int = Field(default=32, ge=0)
    intake_initial: float = Field(default=1000.0, ge=0)
    intake_min: float = Field(default=50.0, ge=0)
    intake_max: float = Field(default=1000.0, ge=0)

    @model_validator(mode="after")
    def _bounds(self) -> "CapacitySpec":
        if not self.workers_floor <= self.workers_initial <= self.workers_ceiling:
            raise ValueError("workers_initial must lie within [workers_floor, workers_ceiling]")
        if not self.intake_min <= self.intake_initial <= self.intake_max:
            raise ValueError("intake_initial must lie within [intake_min, intake_max]")
        return self


class ExecutorSpec(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    surface: Literal["handlers", "script", "http"] = "handlers"
    scripts: Dict[str, str] = Field(default_factory=dict)
    api_url: Optional[str] = None
    capacity: CapacitySpec = Field(default_factory=CapacitySpec)


# ============================================================
# PARTITIONS
# ============================================================


class PartitionTableSpec(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    # Partition names append "_pYYYYMMDDHHMM"; PostgreSQL identifiers stop at 63 chars.
    table_name: str = Field(min_length=1, max_length=48, pattern=r"^[a-z_][a-z0-9_]*$")
    # One partition spans exactly one retention window.
    retention_seconds: int = Field(gt=0)
    lookahead_seconds: int = Field(default=0, ge=0)
    archive_failure_alert_ticks: int = Field(default=3, gt=0)


# ============================================================
# ROOT CONFIG
# ============================================================


class AutonomyConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    cycle_interval_seconds: float = Field(default=60.0, gt=0)
    signal_timeout_seconds: float = Field(default=5.0, gt=0)
    advisor_timeout_seconds: float = Field(default=20.0, gt=0)
    action_timeout_seconds: float = Field(default=30.0, gt=0)
    advisor_confidence_floor: float = Field(default=0.6, ge=0.0, le=1.0)
    history_size: int = Field(default=10, ge=0)

    persist_max_attempts: int = Field(default=5, ge=1)
    persist_base_delay_seconds: float = Field(default=1.0, ge=0)
    persist_max_delay_seconds: float = Field(default=30.0, ge=0)

    signals: List[SignalSpec] = Field(default_factory=list)
    remediation_rules: List[RemediationRuleSpec] = Field(default_factory=list)
    policy_rules: List[PolicyRuleSpec] = Field(default_factory=list)
    executor: ExecutorSpec = Field(default_factory=ExecutorSpec)

    partition_tick_interval_seconds: float = Field(default=3600.0, gt=0)
    partition_tables: List[PartitionTableSpec] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_names(self) -> "AutonomyConfig":
        for label, names in (
            ("signal", [s.name for s in self.signals]),
            ("remediation rule", [r.id for r in self.remediation_rules]),
            ("policy rule", [r.id for r in self.policy_rules]),
            ("partition table", [t.table_name for t in self.partition_tables]),
        ):
            if len(names) != len(set(names)):
                raise ValueError(f"duplicate {label} names in configuration")
        return self

    def signal(self, name: str) -> Optional[SignalSpec]:
        for s in self.signals:
            if s.name == name:
                return s
        return None


# ============================================================
# LOADING (PROCESS START ONLY)
# ============================================================


def config_path_from_env() -> Path:
    raw = (os.getenv("AUTONOMY_CONFIG_PATH") or "").strip()
    if raw:
        return Path(raw).expanduser()
    return DEFAULT_CONFIG_PATH


def parse_autonomy_config(data: Any) -> AutonomyConfig:
    if not isinstance(data, dict):
        raise AutonomyConfigError("autonomy config must be a JSON object")
    try:
        return AutonomyConfig.model_validate(data)
    except ValidationError as exc:
        raise AutonomyConfigError(f"invalid autonomy config: {exc}") from exc


def load_autonomy_config(path: Optional[Path] = None) -> AutonomyConfig:
    """
    Loads and validates the static configuration.

    An invalid file is a startup error; nothing is partially applied.
    """
    p = path or config_path_from_env()
    try:
        raw = p.read_text(encoding="utf-8")
    except OSError as exc:
        raise AutonomyConfigError(f"cannot read autonomy config at {p}: {exc}") from exc

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise AutonomyConfigError(f"autonomy config at {p} is not valid JSON: {exc}") from exc

    cfg = parse_autonomy_config(data)
    logger.info(
        "autonomy_config_loaded",
        extra={
            "path": str(p),
            "signals": len(cfg.signals),
            "policy_rules": len(cfg.policy_rules),
            "partition_tables": len(cfg.partition_tables),
        },
    )
    return cfg
