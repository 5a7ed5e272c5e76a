from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from services.alerting_service import AlertingService
from services.autonomy.action_executor import ActionExecutor, InvocationResult
from services.autonomy.config import parse_autonomy_config
from services.autonomy.execution_surfaces import HandlerExecutionSurface
from services.autonomy.healing_loop import HealingLoop
from services.autonomy.policy_guard import PolicyGuard
from services.autonomy.reasoning_advisor import NullReasoningAdvisor
from services.autonomy.remediation_rules import RemediationRuleTable
from services.autonomy.telemetry_reader import StaticTelemetryReader
from services.autonomy.types import (
    ActionSource,
    ExecutionOutcome,
    PolicyDecision,
    RemediationAction,
    Severity,
)
from services.metrics_service import MetricsService


class MemoryAuditLog:
    def __init__(self, fail_times: int = 0):
        self.records: List[Dict[str, Any]] = []
        self.fail_times = fail_times
        self.calls = 0

    def append_decision(self, record) -> bool:
        self.calls += 1
        if self.calls <= self.fail_times:
            raise RuntimeError("database unavailable")
        assert record.sealed
        self.records.append(record.to_dict())
        return True

    def append_partition_event(self, event) -> bool:
        return True


class FakeAdvisor:
    def __init__(self, suggestions: Optional[List[RemediationAction]] = None, exc: Optional[Exception] = None):
        self.suggestions = suggestions or []
        self.exc = exc
        self.calls: List[tuple] = []

    async def suggest(self, anomaly, recent_history):
        self.calls.append((anomaly, list(recent_history)))
        if self.exc is not None:
            raise self.exc
        return list(self.suggestions)


class RecordingSleep:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


BASE_CONFIG: Dict[str, Any] = {
    "signal_timeout_seconds": 0.2,
    "persist_max_attempts": 3,
    "persist_base_delay_seconds": 1.0,
    "signals": [
        {
            "name": "cpu_util",
            "unit": "percent",
            "thresholds": [
                {"severity": "critical", "op": ">=", "value": 90},
                {"severity": "high", "op": ">=", "value": 80},
            ],
        },
        {
            "name": "error_rate",
            "unit": "ratio",
            "thresholds": [
                {"severity": "high", "op": ">=", "value": 0.05},
                {"severity": "medium", "op": ">=", "value": 0.02},
            ],
        },
    ],
    "remediation_rules": [
        {
            "id": "cpu-critical",
            "signal": "cpu_util",
            "min_severity": "critical",
            "action_kind": "scale_down_workers",
            "params": {"step": 2},
        }
    ],
    "policy_rules": [
        {
            "id": "scale-down",
            "applies_to": "scale_down_workers",
            "max_actions_per_window": 1,
            "cooldown_seconds": 300,
        }
    ],
}


def _build(
    clock,
    values: Dict[str, float],
    *,
    config: Optional[Dict[str, Any]] = None,
    advisor=None,
    audit: Optional[MemoryAuditLog] = None,
    handlers: Optional[Dict[str, Any]] = None,
    sleep=None,
    reader=None,
):
    cfg = parse_autonomy_config(config or BASE_CONFIG)
    audit = audit or MemoryAuditLog()
    alerting = AlertingService()

    def ok(params, ctx):
        return InvocationResult(True, f"applied attempt={ctx.attempt}")

    surface = HandlerExecutionSurface(handlers or {"scale_down_workers": ok})
    loop = HealingLoop(
        cfg,
        reader or StaticTelemetryReader(values, clock=clock),
        RemediationRuleTable(cfg.remediation_rules),
        advisor or NullReasoningAdvisor(),
        PolicyGuard(cfg.policy_rules, clock=clock),
        ActionExecutor(surface, timeout_seconds=1.0),
        audit,
        alerting=alerting,
        clock=clock,
        sleep=sleep or RecordingSleep(),
    )
    return loop, audit, alerting


@pytest.mark.anyio
async def test_cpu_critical_allow_then_defer_on_next_cycle(clock) -> None:
    loop, audit, _ = _build(clock, {"cpu_util": 95.0})

    first = await loop.run_cycle()
    assert [a.severity for a in first.anomalies] == [Severity.CRITICAL]
    assert first.anomalies[0].rule_id == "cpu-critical"
    assert [c.kind for c in first.candidates] == ["scale_down_workers"]
    assert first.verdicts[0].decision == PolicyDecision.ALLOW
    assert first.executed[0].outcome == ExecutionOutcome.SUCCESS

    clock.advance(60)
    second = await loop.run_cycle()
    assert second.verdicts[0].decision == PolicyDecision.DEFER
    assert second.executed[0].outcome == ExecutionOutcome.SKIPPED
    assert second.executed[0].detail.startswith("defer: cooldown_active")

    assert [r["cycle_id"] for r in audit.records] == [first.cycle_id, second.cycle_id]


@pytest.mark.anyio
async def test_empty_cycle_still_persists_one_record(clock) -> None:
    loop, audit, _ = _build(clock, {"cpu_util": 10.0, "error_rate": 0.0})

    record = await loop.run_cycle()

    assert record.sealed
    assert record.anomalies == [] and record.candidates == [] and record.verdicts == []
    assert len(audit.records) == 1
    assert audit.records[0]["executed"] == []


@pytest.mark.anyio
async def test_missing_signal_is_recorded_not_fatal(clock) -> None:
    loop, audit, _ = _build(clock, {"error_rate": 0.0})

    record = await loop.run_cycle()

    assert record.missing_signals == ["cpu_util"]
    assert record.anomalies == []
    assert len(audit.records) == 1
    assert MetricsService.counter("healing.missing_signals") == 1


@pytest.mark.anyio
async def test_slow_signal_times_out_as_missing(clock) -> None:
    class SlowReader(StaticTelemetryReader):
        async def read_signal(self, name, window=None):
            if name == "cpu_util":
                await asyncio.sleep(5)
            return await super().read_signal(name, window)

    reader = SlowReader({"cpu_util": 95.0, "error_rate": 0.03}, clock=clock)
    loop, _, _ = _build(clock, {}, reader=reader)

    record = await loop.run_cycle()

    assert record.missing_signals == ["cpu_util"]
    assert [a.signal.name for a in record.anomalies] == ["error_rate"]
    assert record.anomalies[0].severity == Severity.MEDIUM


@pytest.mark.anyio
async def test_advisor_below_confidence_floor_yields_no_candidate(clock) -> None:
    advisor = FakeAdvisor(
        [RemediationAction(kind="restart_service", source=ActionSource.ADVISOR, confidence=0.4)]
    )
    loop, audit, _ = _build(clock, {"cpu_util": 10.0, "error_rate": 0.08}, advisor=advisor)

    record = await loop.run_cycle()

    assert len(advisor.calls) == 1
    assert [a.signal.name for a in record.anomalies] == ["error_rate"]
    assert record.anomalies[0].rule_id is None
    assert record.candidates == []
    assert record.verdicts == []
    assert len(audit.records) == 1


@pytest.mark.anyio
async def test_advisor_suggestion_still_goes_through_policy(clock) -> None:
    advisor = FakeAdvisor(
        [
            RemediationAction(kind="restart_service", source=ActionSource.ADVISOR, confidence=0.9),
            RemediationAction(kind="scale_down_workers", source=ActionSource.ADVISOR, confidence=0.7),
        ]
    )
    loop, _, _ = _build(clock, {"error_rate": 0.3}, advisor=advisor)

    record = await loop.run_cycle()

    assert [c.kind for c in record.candidates] == ["restart_service"]
    assert record.candidates[0].source == ActionSource.ADVISOR
    assert record.verdicts[0].decision == PolicyDecision.DENY
    assert record.verdicts[0].reason == "no_matching_rule"
    assert record.executed[0].outcome == ExecutionOutcome.SKIPPED


@pytest.mark.anyio
async def test_rule_table_has_priority_over_advisor(clock) -> None:
    advisor = FakeAdvisor(
        [RemediationAction(kind="restart_service", source=ActionSource.ADVISOR, confidence=1.0)]
    )
    loop, _, _ = _build(clock, {"cpu_util": 99.0}, advisor=advisor)

    record = await loop.run_cycle()

    assert advisor.calls == []
    assert record.candidates[0].source == ActionSource.RULE


@pytest.mark.anyio
async def test_advisor_not_consulted_below_high_severity(clock) -> None:
    advisor = FakeAdvisor(
        [RemediationAction(kind="restart_service", source=ActionSource.ADVISOR, confidence=1.0)]
    )
    loop, _, _ = _build(clock, {"error_rate": 0.03}, advisor=advisor)

    record = await loop.run_cycle()

    assert record.anomalies[0].severity == Severity.MEDIUM
    assert advisor.calls == []
    assert record.candidates == []


@pytest.mark.anyio
async def test_advisor_error_is_contained_to_its_anomaly(clock) -> None:
    advisor = FakeAdvisor(exc=RuntimeError("advisor down"))
    loop, audit, _ = _build(clock, {"cpu_util": 95.0, "error_rate": 0.3}, advisor=advisor)

    record = await loop.run_cycle()

    assert [a.signal.name for a in record.anomalies] == ["cpu_util", "error_rate"]
    assert [c.kind for c in record.candidates] == ["scale_down_workers"]
    assert record.executed[0].outcome == ExecutionOutcome.SUCCESS
    assert len(audit.records) == 1


@pytest.mark.anyio
async def test_advisor_receives_recent_history_for_signal(clock) -> None:
    advisor = FakeAdvisor()
    loop, _, _ = _build(clock, {"error_rate": 0.3}, advisor=advisor)

    await loop.run_cycle()
    clock.advance(60)
    await loop.run_cycle()

    first_history = advisor.calls[0][1]
    second_history = advisor.calls[1][1]
    assert first_history == []
    assert len(second_history) == 1
    assert second_history[0].signal.name == "error_rate"


@pytest.mark.anyio
async def test_executor_failure_does_not_abort_other_candidates(clock) -> None:
    config = dict(BASE_CONFIG)
    config["remediation_rules"] = BASE_CONFIG["remediation_rules"] + [
        {
            "id": "errors-throttle",
            "signal": "error_rate",
            "min_severity": "high",
            "action_kind": "throttle_intake",
            "params": {"factor": 0.5},
        }
    ]
    config["policy_rules"] = BASE_CONFIG["policy_rules"] + [
        {"id": "intake", "applies_to": "*_intake", "max_actions_per_window": 5}
    ]

    def boom(params, ctx):
        raise RuntimeError("scaler unreachable")

    def ok(params, ctx):
        return InvocationResult(True, "throttled")

    loop, audit, _ = _build(
        clock,
        {"cpu_util": 95.0, "error_rate": 0.3},
        config=config,
        handlers={"scale_down_workers": boom, "throttle_intake": ok},
    )

    record = await loop.run_cycle()

    assert [e.action.kind for e in record.executed] == ["scale_down_workers", "throttle_intake"]
    assert record.executed[0].outcome == ExecutionOutcome.FAILURE
    assert "scaler unreachable" in record.executed[0].detail
    assert record.executed[1].outcome == ExecutionOutcome.SUCCESS
    assert len(audit.records) == 1


@pytest.mark.anyio
async def test_persistence_retries_with_exponential_backoff(clock) -> None:
    sleep = RecordingSleep()
    audit = MemoryAuditLog(fail_times=2)
    loop, _, alerting = _build(clock, {"cpu_util": 10.0}, audit=audit, sleep=sleep)

    await loop.run_cycle()

    assert sleep.delays == [1.0, 2.0]
    assert len(audit.records) == 1
    assert alerting.recent() == []


@pytest.mark.anyio
async def test_persistence_exhaustion_raises_alert_not_exception(clock) -> None:
    sleep = RecordingSleep()
    audit = MemoryAuditLog(fail_times=99)
    loop, _, alerting = _build(clock, {"cpu_util": 10.0}, audit=audit, sleep=sleep)

    record = await loop.run_cycle()

    assert record.sealed
    assert audit.calls == 3
    assert sleep.delays == [1.0, 2.0]
    alerts = alerting.recent()
    assert [a["kind"] for a in alerts] == ["persistence_failure"]
    assert alerts[0]["details"]["cycle_id"] == record.cycle_id
    assert loop.persist_failures == 1

    # The loop keeps running after a lost record.
    audit.fail_times = 0
    await loop.run_cycle()
    assert len(audit.records) == 1


@pytest.mark.anyio
async def test_cancelled_cycle_persists_partial_record(clock) -> None:
    started = asyncio.Event()

    async def hang(params, ctx):
        started.set()
        await asyncio.sleep(30)
        return InvocationResult(True, "unreachable")

    loop, audit, _ = _build(
        clock, {"cpu_util": 95.0}, handlers={"scale_down_workers": hang}
    )
    loop.executor.timeout_seconds = 60

    task = asyncio.create_task(loop.run_cycle())
    await asyncio.wait_for(started.wait(), timeout=2)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert len(audit.records) == 1
    persisted = audit.records[0]
    assert persisted["cancelled"] is True
    assert persisted["finished_at"] is not None
    assert [a["severity"] for a in persisted["anomalies"]] == ["critical"]
    assert persisted["executed"][0]["outcome"] == "failure"
    assert persisted["executed"][0]["detail"] == "cancelled"


@pytest.mark.anyio
async def test_cancel_during_advisor_call_still_records_allowed_candidate(clock) -> None:
    consulted = asyncio.Event()

    class HangingAdvisor:
        async def suggest(self, anomaly, recent_history):
            consulted.set()
            await asyncio.sleep(30)
            return []

    loop, audit, _ = _build(
        clock, {"cpu_util": 95.0, "error_rate": 0.06}, advisor=HangingAdvisor()
    )

    task = asyncio.create_task(loop.run_cycle())
    await asyncio.wait_for(consulted.wait(), timeout=2)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    [persisted] = audit.records
    assert persisted["cancelled"] is True
    assert [v["decision"] for v in persisted["verdicts"]] == ["allow"]
    assert len(persisted["executed"]) == len(persisted["candidates"]) == 1
    assert persisted["executed"][0]["outcome"] == "failure"
    assert persisted["executed"][0]["detail"] == "not_executed"


@pytest.mark.anyio
async def test_policy_error_is_recorded_as_deny(clock) -> None:
    loop, _, _ = _build(clock, {"cpu_util": 95.0})

    def broken(action, state):
        raise ValueError("bad rule")

    loop.guard.evaluate = broken

    record = await loop.run_cycle()

    assert record.verdicts[0].decision == PolicyDecision.DENY
    assert record.verdicts[0].reason == "policy_error:ValueError"
    assert record.executed[0].outcome == ExecutionOutcome.SKIPPED
