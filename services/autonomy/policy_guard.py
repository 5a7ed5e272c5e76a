# services/autonomy/policy_guard.py

from __future__ import annotations

import fnmatch
import logging
import threading
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Callable, Deque, Dict, List, Mapping, Optional, Sequence

from services.alerting_service import FailureKind
from services.autonomy.config import PolicyRuleSpec
from services.autonomy.kill_switch import AutonomyKillSwitch
from services.autonomy.types import PolicyDecision, PolicyVerdict, RemediationAction
from services.metrics_service import MetricsService

logger = logging.getLogger(__name__)

SystemState = Mapping[str, float]

# Kinds that are never executed autonomously, whatever the rule table says.
FORBIDDEN_ACTION_KINDS = frozenset(
    {
        "delete_user_data",
        "change_security_settings",
        "modify_rls_policies",
        "grant_admin_access",
        "change_billing_settings",
    }
)

# Destructive fragments refused anywhere in string params.
FORBIDDEN_PARAM_FRAGMENTS = (
    "rm -rf",
    "shutdown",
    "mkfs",
    "drop table",
    "truncate",
    "delete from",
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================
# RATE COUNTER (EXCLUSIVE WRITE PER ACTION KIND)
# ============================================================


class ActionRateCounter:
    """
    Rolling record of authorized executions per action kind.

    Only PolicyGuard writes to it, and only while holding the lock for
    that kind. Reads return copies.
    """

    def __init__(self) -> None:
        self._registry_lock = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._history: Dict[str, Deque[datetime]] = {}

    def lock_for(self, kind: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(kind)
            if lock is None:
                lock = threading.Lock()
                self._locks[kind] = lock
                self._history[kind] = deque()
            return lock

    def last_execution(self, kind: str) -> Optional[datetime]:
        hist = self._history.get(kind)
        if not hist:
            return None
        return hist[-1]

    def count_since(self, kind: str, since: datetime) -> int:
        hist = self._history.get(kind) or ()
        return sum(1 for ts in hist if ts > since)

    def record(self, kind: str, at: datetime, *, keep_after: datetime) -> None:
        hist = self._history[kind]
        hist.append(at)
        # The newest entry always survives pruning; cooldown needs it.
        while len(hist) > 1 and hist[0] <= keep_after:
            hist.popleft()

    def snapshot(self) -> Dict[str, List[str]]:
        with self._registry_lock:
            kinds = list(self._history.keys())
        out: Dict[str, List[str]] = {}
        for kind in kinds:
            with self.lock_for(kind):
                out[kind] = [ts.isoformat() for ts in self._history[kind]]
        return out


# ============================================================
# POLICY GUARD (DEFAULT-DENY)
# ============================================================


class PolicyGuard:
    """
    Deterministic safety gate for remediation actions.

    RULES:
    - Default deny: an action with no matching rule never executes
    - No I/O
    - The rate counter is updated atomically with the decision
    - DEFER means "later", DENY means "not under this policy"
    """

    def __init__(
        self,
        rules: Sequence[PolicyRuleSpec],
        *,
        kill_switch: Optional[AutonomyKillSwitch] = None,
        counter: Optional[ActionRateCounter] = None,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.rules: List[PolicyRuleSpec] = list(rules)
        self.kill_switch = kill_switch
        self.counter = counter or ActionRateCounter()
        self._clock = clock

    # --------------------------------------------------------
    # RULE MATCHING
    # --------------------------------------------------------
    def match_rule(self, kind: str) -> Optional[PolicyRuleSpec]:
        for rule in self.rules:
            if fnmatch.fnmatchcase(kind, rule.applies_to):
                return rule
        return None

    @staticmethod
    def _forbidden_reason(action: RemediationAction) -> Optional[str]:
        if action.kind in FORBIDDEN_ACTION_KINDS:
            return "forbidden_action_kind"
        for value in action.params.values():
            if not isinstance(value, str):
                continue
            lowered = value.lower()
            for fragment in FORBIDDEN_PARAM_FRAGMENTS:
                if fragment in lowered:
                    return "forbidden_param_content"
        return None

    def _verdict(
        self,
        action: RemediationAction,
        decision: PolicyDecision,
        reason: str,
        at: datetime,
        rule: Optional[PolicyRuleSpec] = None,
    ) -> PolicyVerdict:
        return PolicyVerdict(
            action=action,
            decision=decision,
            reason=reason,
            evaluated_at=at,
            rule_id=rule.id if rule is not None else None,
        )

    # --------------------------------------------------------
    # EVALUATE
    # --------------------------------------------------------
    def evaluate(
        self,
        action: RemediationAction,
        current_state: SystemState,
    ) -> PolicyVerdict:
        now = self._clock()

        # -------------------------------
        # HARD OVERRIDES
        # -------------------------------
        if self.kill_switch is not None and not self.kill_switch.is_enabled():
            return self._verdict(action, PolicyDecision.DENY, "autonomy_disabled", now)

        forbidden = self._forbidden_reason(action)
        if forbidden:
            return self._verdict(action, PolicyDecision.DENY, forbidden, now)

        # -------------------------------
        # DEFAULT DENY
        # -------------------------------
        rule = self.match_rule(action.kind)
        if rule is None:
            MetricsService.incr(f"policy.{FailureKind.POLICY_MISCONFIGURATION.value}")
            logger.warning(
                "policy_no_matching_rule",
                extra={
                    "kind": action.kind,
                    "source": action.source.value,
                    "failure_kind": FailureKind.POLICY_MISCONFIGURATION.value,
                },
            )
            return self._verdict(action, PolicyDecision.DENY, "no_matching_rule", now)

        # -------------------------------
        # CONSTRAINT PREDICATE
        # -------------------------------
        for constraint in rule.constraints:
            if not constraint.holds(current_state):
                return self._verdict(
                    action,
                    PolicyDecision.DENY,
                    f"constraint_failed:{constraint.signal}{constraint.op}{constraint.value:g}",
                    now,
                    rule,
                )

        # -------------------------------
        # COOLDOWN + RATE (CRITICAL SECTION)
        # -------------------------------
        window_start = now - timedelta(seconds=rule.rate_window_seconds)
        with self.counter.lock_for(action.kind):
            last = self.counter.last_execution(action.kind)
            if last is not None and rule.cooldown_seconds > 0:
                elapsed = (now - last).total_seconds()
                if elapsed < rule.cooldown_seconds:
                    remaining = rule.cooldown_seconds - elapsed
                    return self._verdict(
                        action,
                        PolicyDecision.DEFER,
                        f"cooldown_active:{remaining:.0f}s_remaining",
                        now,
                        rule,
                    )

            used = self.counter.count_since(action.kind, window_start)
            if used >= rule.max_actions_per_window:
                return self._verdict(
                    action,
                    PolicyDecision.DENY,
                    f"rate_limit_exceeded:{used}/{rule.max_actions_per_window}",
                    now,
                    rule,
                )

            self.counter.record(action.kind, now, keep_after=window_start)

        return self._verdict(action, PolicyDecision.ALLOW, "policy_allow", now, rule)
