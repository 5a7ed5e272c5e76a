from __future__ import annotations

import threading

import pytest

from services.autonomy.config import ConstraintSpec, PolicyRuleSpec
from services.autonomy.kill_switch import AutonomyKillSwitch
from services.autonomy.policy_guard import PolicyGuard
from services.autonomy.types import ActionSource, PolicyDecision, RemediationAction
from services.metrics_service import MetricsService


def _rule(**overrides) -> PolicyRuleSpec:
    data = {
        "id": "scale-down",
        "applies_to": "scale_down_workers",
        "max_actions_per_window": 1,
        "rate_window_seconds": 3600,
        "cooldown_seconds": 300,
    }
    data.update(overrides)
    return PolicyRuleSpec(**data)


def _action(kind: str = "scale_down_workers", **params) -> RemediationAction:
    return RemediationAction(kind=kind, params=params or {"step": 2})


def test_unmatched_kind_is_denied_by_default(clock) -> None:
    guard = PolicyGuard([_rule()], clock=clock)

    verdict = guard.evaluate(_action("restart_service"), {"cpu_util": 95.0})

    assert verdict.decision == PolicyDecision.DENY
    assert verdict.reason == "no_matching_rule"
    assert verdict.rule_id is None
    assert MetricsService.counter("policy.policy_misconfiguration") == 1


def test_empty_rule_set_denies_everything(clock) -> None:
    guard = PolicyGuard([], clock=clock)
    for kind in ("scale_down_workers", "throttle_intake", "anything"):
        assert guard.evaluate(_action(kind), {}).decision == PolicyDecision.DENY


def test_first_execution_is_allowed_and_counted(clock) -> None:
    guard = PolicyGuard([_rule()], clock=clock)

    verdict = guard.evaluate(_action(), {"cpu_util": 95.0})

    assert verdict.decision == PolicyDecision.ALLOW
    assert verdict.rule_id == "scale-down"
    assert verdict.evaluated_at == clock.now
    assert guard.counter.last_execution("scale_down_workers") == clock.now


def test_cooldown_defers_instead_of_denying(clock) -> None:
    guard = PolicyGuard([_rule(max_actions_per_window=10)], clock=clock)
    assert guard.evaluate(_action(), {}).allowed

    clock.advance(60)
    verdict = guard.evaluate(_action(), {})

    assert verdict.decision == PolicyDecision.DEFER
    assert verdict.reason.startswith("cooldown_active:")

    clock.advance(241)
    assert guard.evaluate(_action(), {}).decision == PolicyDecision.ALLOW


def test_deferred_attempts_do_not_consume_rate_budget(clock) -> None:
    guard = PolicyGuard([_rule(max_actions_per_window=2, cooldown_seconds=100)], clock=clock)
    assert guard.evaluate(_action(), {}).allowed

    for _ in range(5):
        clock.advance(10)
        assert guard.evaluate(_action(), {}).decision == PolicyDecision.DEFER

    clock.advance(100)
    assert guard.evaluate(_action(), {}).allowed
    assert len(guard.counter.snapshot()["scale_down_workers"]) == 2


def test_rate_limit_denies_within_trailing_window(clock) -> None:
    guard = PolicyGuard([_rule(max_actions_per_window=1, cooldown_seconds=0)], clock=clock)
    assert guard.evaluate(_action(), {}).allowed

    clock.advance(10)
    verdict = guard.evaluate(_action(), {})
    assert verdict.decision == PolicyDecision.DENY
    assert verdict.reason == "rate_limit_exceeded:1/1"

    clock.advance(3600)
    assert guard.evaluate(_action(), {}).allowed


def test_zero_budget_rule_never_allows(clock) -> None:
    guard = PolicyGuard([_rule(max_actions_per_window=0, cooldown_seconds=0)], clock=clock)
    verdict = guard.evaluate(_action(), {})
    assert verdict.decision == PolicyDecision.DENY
    assert verdict.reason.startswith("rate_limit_exceeded")


def test_constraint_failure_denies(clock) -> None:
    rule = _rule(constraints=[ConstraintSpec(signal="cpu_util", op=">=", value=50)])
    guard = PolicyGuard([rule], clock=clock)

    low = guard.evaluate(_action(), {"cpu_util": 20.0})
    assert low.decision == PolicyDecision.DENY
    assert low.reason.startswith("constraint_failed:cpu_util")

    # A constraint over a signal that is missing from the state is false.
    missing = guard.evaluate(_action(), {})
    assert missing.decision == PolicyDecision.DENY

    assert guard.evaluate(_action(), {"cpu_util": 75.0}).allowed


def test_glob_matcher_and_first_rule_wins(clock) -> None:
    rules = [
        _rule(id="throttle", applies_to="throttle_intake", max_actions_per_window=0),
        _rule(id="intake", applies_to="*_intake", cooldown_seconds=0),
    ]
    guard = PolicyGuard(rules, clock=clock)

    assert guard.match_rule("throttle_intake").id == "throttle"
    assert guard.match_rule("restore_intake").id == "intake"
    assert guard.match_rule("scale_down_workers") is None
    assert guard.evaluate(_action("throttle_intake", factor=0.5), {}).decision == PolicyDecision.DENY
    assert guard.evaluate(_action("restore_intake", factor=2.0), {}).allowed


def test_kill_switch_denies_before_rule_lookup_without_consuming_budget(clock) -> None:
    ks = AutonomyKillSwitch(enabled=False)
    guard = PolicyGuard([_rule()], kill_switch=ks, clock=clock)

    verdict = guard.evaluate(_action(), {})
    assert verdict.decision == PolicyDecision.DENY
    assert verdict.reason == "autonomy_disabled"
    assert guard.counter.last_execution("scale_down_workers") is None

    ks.enable(reason="incident closed")
    assert guard.evaluate(_action(), {}).allowed


@pytest.mark.parametrize(
    "action",
    [
        RemediationAction(kind="delete_user_data", params={}),
        RemediationAction(kind="scale_down_workers", params={"note": "then rm -rf /tmp"}),
        RemediationAction(kind="scale_down_workers", params={"sql": "DROP TABLE messages"}),
    ],
)
def test_forbidden_actions_are_denied_even_with_matching_rule(clock, action) -> None:
    guard = PolicyGuard([_rule(applies_to="*")], clock=clock)
    verdict = guard.evaluate(action, {})
    assert verdict.decision == PolicyDecision.DENY
    assert verdict.reason.startswith("forbidden_")


def test_advisor_actions_pass_the_same_gate(clock) -> None:
    guard = PolicyGuard([], clock=clock)
    advised = RemediationAction(
        kind="restart_service", params={}, source=ActionSource.ADVISOR, confidence=0.99
    )
    assert guard.evaluate(advised, {}).decision == PolicyDecision.DENY


def test_concurrent_evaluations_cannot_both_take_the_last_slot(clock) -> None:
    guard = PolicyGuard([_rule(max_actions_per_window=1, cooldown_seconds=0)], clock=clock)
    barrier = threading.Barrier(8)
    verdicts = []
    lock = threading.Lock()

    def worker() -> None:
        barrier.wait()
        v = guard.evaluate(_action(), {})
        with lock:
            verdicts.append(v)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sum(1 for v in verdicts if v.allowed) == 1
    assert len(verdicts) == 8
