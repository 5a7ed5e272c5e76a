# services/autonomy/types.py

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Union

Primitive = Union[str, int, float, bool, None]

_PRIMITIVE_TYPES = (str, int, float, bool, type(None))


def _iso(ts: Optional[datetime]) -> Optional[str]:
    if ts is None:
        return None
    return ts.isoformat().replace("+00:00", "Z")


# ============================================================
# SEVERITY
# ============================================================


class Severity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}

# Threshold evaluation order; first match wins.
SEVERITY_PRIORITY = (
    Severity.CRITICAL,
    Severity.HIGH,
    Severity.MEDIUM,
    Severity.LOW,
)

ADVISOR_SEVERITIES = frozenset({Severity.HIGH, Severity.CRITICAL})


# ============================================================
# SIGNAL / ANOMALY (EPHEMERAL)
# ============================================================


@dataclass(frozen=True)
class Signal:
    name: str
    value: float
    unit: str
    observed_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "value": self.value,
            "unit": self.unit,
            "observed_at": _iso(self.observed_at),
        }


@dataclass(frozen=True)
class Anomaly:
    signal: Signal
    severity: Severity
    rule_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "signal": self.signal.to_dict(),
            "severity": self.severity.value,
            "rule_id": self.rule_id,
        }


# ============================================================
# REMEDIATION ACTION (TAGGED VARIANT)
# ============================================================


class ActionSource(Enum):
    RULE = "rule"
    ADVISOR = "advisor"


@dataclass(frozen=True)
class RemediationAction:
    """
    A candidate remediation.

    `kind` is the tag, `params` the structured payload. Every kind flows
    through the same policy gate and the same execution interface.
    """

    kind: str
    params: Mapping[str, Primitive] = field(default_factory=dict)
    source: ActionSource = ActionSource.RULE
    confidence: float = 1.0
    reason: Optional[str] = None

    def __post_init__(self) -> None:
        if not isinstance(self.kind, str) or not self.kind.strip():
            raise ValueError("action kind must be a non-empty string")

        params = dict(self.params or {})
        for key, value in params.items():
            if not isinstance(key, str):
                raise ValueError("action param names must be strings")
            if not isinstance(value, _PRIMITIVE_TYPES):
                raise ValueError(f"action param {key!r} is not a primitive value")
        object.__setattr__(self, "params", MappingProxyType(params))

        if isinstance(self.confidence, bool) or not isinstance(
            self.confidence, (int, float)
        ):
            raise ValueError("confidence must be a number")
        if not 0.0 <= float(self.confidence) <= 1.0:
            raise ValueError("confidence must be within [0, 1]")
        object.__setattr__(self, "confidence", float(self.confidence))

    def params_key(self) -> str:
        """Stable identity of kind + params, used for idempotency bookkeeping."""
        return self.kind + ":" + json.dumps(
            dict(self.params), sort_keys=True, default=str
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "params": dict(self.params),
            "source": self.source.value,
            "confidence": self.confidence,
            "reason": self.reason,
        }


# ============================================================
# POLICY VERDICT
# ============================================================


class PolicyDecision(Enum):
    ALLOW = "allow"
    DENY = "deny"
    DEFER = "defer"


@dataclass(frozen=True)
class PolicyVerdict:
    action: RemediationAction
    decision: PolicyDecision
    reason: str
    evaluated_at: datetime
    rule_id: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.decision == PolicyDecision.ALLOW

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.to_dict(),
            "decision": self.decision.value,
            "reason": self.reason,
            "rule_id": self.rule_id,
            "evaluated_at": _iso(self.evaluated_at),
        }


# ============================================================
# EXECUTION OUTCOME
# ============================================================


class ExecutionOutcome(Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class ExecutedAction:
    action: RemediationAction
    outcome: ExecutionOutcome
    detail: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.to_dict(),
            "outcome": self.outcome.value,
            "detail": self.detail,
        }


# ============================================================
# DECISION RECORD (AUDIT UNIT)
# ============================================================


class RecordSealedError(RuntimeError):
    pass


@dataclass
class DecisionRecord:
    """
    One record per healing cycle.

    RULES:
    - created at cycle start
    - appended to only while open
    - sealed once, then read-only
    """

    cycle_id: str
    started_at: datetime
    anomalies: List[Anomaly] = field(default_factory=list)
    candidates: List[RemediationAction] = field(default_factory=list)
    verdicts: List[PolicyVerdict] = field(default_factory=list)
    executed: List[ExecutedAction] = field(default_factory=list)
    missing_signals: List[str] = field(default_factory=list)
    finished_at: Optional[datetime] = None
    cancelled: bool = False
    error: Optional[str] = None

    @property
    def sealed(self) -> bool:
        return self.finished_at is not None

    def _ensure_open(self) -> None:
        if self.sealed:
            raise RecordSealedError(f"decision record {self.cycle_id} is sealed")

    def add_missing_signal(self, name: str) -> None:
        self._ensure_open()
        self.missing_signals.append(name)

    def add_anomaly(self, anomaly: Anomaly) -> None:
        self._ensure_open()
        self.anomalies.append(anomaly)

    def add_candidate(self, action: RemediationAction) -> None:
        self._ensure_open()
        self.candidates.append(action)

    def add_verdict(self, verdict: PolicyVerdict) -> None:
        self._ensure_open()
        self.verdicts.append(verdict)

    def add_execution(self, executed: ExecutedAction) -> None:
        self._ensure_open()
        self.executed.append(executed)

    def mark_cancelled(self) -> None:
        self._ensure_open()
        self.cancelled = True

    def mark_error(self, error: str) -> None:
        self._ensure_open()
        self.error = error

    def seal(self, finished_at: datetime) -> None:
        self._ensure_open()
        self.finished_at = finished_at

    def summary(self) -> Dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "anomalies": len(self.anomalies),
            "candidates": len(self.candidates),
            "executed": len(
                [e for e in self.executed if e.outcome != ExecutionOutcome.SKIPPED]
            ),
            "missing_signals": list(self.missing_signals),
            "cancelled": self.cancelled,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "anomalies": [a.to_dict() for a in self.anomalies],
            "candidates": [c.to_dict() for c in self.candidates],
            "verdicts": [v.to_dict() for v in self.verdicts],
            "executed": [e.to_dict() for e in self.executed],
            "missing_signals": list(self.missing_signals),
            "cancelled": self.cancelled,
            "error": self.error,
        }
