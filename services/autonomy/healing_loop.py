# services/autonomy/healing_loop.py

"""
Closed-loop remediation cycle.

One cycle:
  1) read every configured signal (concurrently, bounded; failures -> MISSING)
  2) classify thresholds CRITICAL > HIGH > MEDIUM > LOW, first match wins
  3) per anomaly: rule table first, advisor second (HIGH/CRITICAL only,
     top suggestion at or above the confidence floor)
  4) every candidate goes through PolicyGuard; only ALLOW executes
  5) seal and persist exactly one DecisionRecord, whatever happened
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Tuple

from services.alerting_service import AlertingService, FailureKind
from services.audit_log import AuditLog
from services.autonomy.action_executor import ActionExecutor
from services.autonomy.config import AutonomyConfig, SignalSpec
from services.autonomy.policy_guard import PolicyGuard
from services.autonomy.reasoning_advisor import ReasoningAdvisor
from services.autonomy.remediation_rules import RemediationRuleTable
from services.autonomy.telemetry_reader import TelemetryReader
from services.autonomy.types import (
    ADVISOR_SEVERITIES,
    SEVERITY_PRIORITY,
    Anomaly,
    DecisionRecord,
    ExecutedAction,
    ExecutionOutcome,
    PolicyDecision,
    PolicyVerdict,
    RemediationAction,
    Signal,
)
from services.metrics_service import MetricsService

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _Slot:
    """Position of one candidate in the record's executed sequence."""

    action: RemediationAction
    verdict: PolicyVerdict
    executed: Optional[ExecutedAction] = None


class HealingLoop:
    """
    RULES:
    - Exactly one DecisionRecord per cycle, including empty and cancelled cycles
    - A failure inside one anomaly never stops the others
    - The advisor only proposes; PolicyGuard decides
    - Losing an audit record raises an alert, never a crash
    """

    def __init__(
        self,
        config: AutonomyConfig,
        telemetry: TelemetryReader,
        rules: RemediationRuleTable,
        advisor: ReasoningAdvisor,
        guard: PolicyGuard,
        executor: ActionExecutor,
        audit_log: AuditLog,
        *,
        alerting: Optional[AlertingService] = None,
        clock: Callable[[], datetime] = _utc_now,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config
        self.telemetry = telemetry
        self.rules = rules
        self.advisor = advisor
        self.guard = guard
        self.executor = executor
        self.audit_log = audit_log
        self.alerting = alerting or AlertingService()
        self._clock = clock
        self._sleep = sleep

        self._history: Dict[str, Deque[Anomaly]] = {}
        self.last_record: Optional[DecisionRecord] = None
        self.cycles = 0
        self.persist_failures = 0

    # ============================================================
    # PUBLIC
    # ============================================================
    async def run_cycle(self) -> DecisionRecord:
        record = DecisionRecord(cycle_id=str(uuid.uuid4()), started_at=self._clock())
        self.cycles += 1
        MetricsService.incr("healing.cycles")

        try:
            await self._run_steps(record)
        except asyncio.CancelledError:
            record.mark_cancelled()
            record.seal(self._clock())
            self.last_record = record
            MetricsService.incr("healing.cycles_cancelled")
            logger.warning("healing_cycle_cancelled", extra=record.summary())
            # Shutdown should not wait out the full backoff schedule.
            await asyncio.shield(self._persist(record, max_attempts=1))
            raise
        except Exception as exc:
            logger.exception("healing_cycle_error", extra={"cycle_id": record.cycle_id})
            record.mark_error(f"{type(exc).__name__}: {exc}")

        record.seal(self._clock())
        self.last_record = record
        self._remember_history(record)

        persisted = await self._persist(record)
        logger.info(
            "healing_cycle_completed",
            extra={**record.summary(), "persisted": persisted},
        )
        return record

    def recent_history(self, signal_name: str) -> List[Anomaly]:
        return list(self._history.get(signal_name, ()))

    def status(self) -> Dict[str, Any]:
        return {
            "cycles": self.cycles,
            "persist_failures": self.persist_failures,
            "last_cycle": self.last_record.summary() if self.last_record else None,
        }

    # ============================================================
    # CYCLE STEPS
    # ============================================================
    async def _run_steps(self, record: DecisionRecord) -> None:
        # 1) telemetry
        readings = await self._read_signals(record)
        state = {name: sig.value for name, sig in readings.items()}

        # Every slot gets exactly one execution entry, even when the cycle
        # is interrupted between a verdict and the execution step.
        slots: List[_Slot] = []
        try:
            # 2) + 3) + 4) sequential per signal, contained per signal/anomaly
            for spec in self.config.signals:
                sig = readings.get(spec.name)
                if sig is None:
                    continue
                slot = await self._slot_for(record, spec, sig, state)
                if slot is not None:
                    slots.append(slot)

            # 4) execution (ALLOW only)
            await self._execute_allowed(slots, record.cycle_id)
        finally:
            for slot in slots:
                record.add_execution(self._executed_for(slot))

    async def _slot_for(
        self,
        record: DecisionRecord,
        spec: SignalSpec,
        sig: Signal,
        state: Dict[str, float],
    ) -> Optional[_Slot]:
        try:
            anomaly = self._classify(spec, sig)
        except Exception:
            logger.exception("signal_classification_failed", extra={"signal": spec.name})
            return None
        if anomaly is None:
            return None

        record.add_anomaly(anomaly)
        MetricsService.incr(f"healing.anomalies.{anomaly.severity.value}")

        try:
            candidate = await self._candidate_for(anomaly)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("candidate_selection_failed", extra={"signal": spec.name})
            return None
        if candidate is None:
            return None

        record.add_candidate(candidate)
        verdict = self._evaluate(candidate, state)
        record.add_verdict(verdict)
        MetricsService.incr(f"healing.verdicts.{verdict.decision.value}")
        return _Slot(candidate, verdict)

    async def _read_one(self, spec: SignalSpec) -> Signal:
        window = timedelta(seconds=spec.window_seconds) if spec.window_seconds else None
        return await asyncio.wait_for(
            self.telemetry.read_signal(spec.name, window),
            timeout=self.config.signal_timeout_seconds,
        )

    async def _read_signals(self, record: DecisionRecord) -> Dict[str, Signal]:
        specs = list(self.config.signals)
        results = await asyncio.gather(
            *(self._read_one(spec) for spec in specs), return_exceptions=True
        )

        readings: Dict[str, Signal] = {}
        for spec, res in zip(specs, results):
            if isinstance(res, asyncio.CancelledError):
                raise res
            if isinstance(res, BaseException):
                reason = "timeout" if isinstance(res, asyncio.TimeoutError) else repr(res)
                record.add_missing_signal(spec.name)
                MetricsService.incr("healing.missing_signals")
                logger.warning(
                    "signal_missing",
                    extra={
                        "signal": spec.name,
                        "reason": reason,
                        "failure_kind": FailureKind.MISSING_SIGNAL.value,
                    },
                )
                continue
            readings[spec.name] = res
        return readings

    def _classify(self, spec: SignalSpec, sig: Signal) -> Optional[Anomaly]:
        for severity in SEVERITY_PRIORITY:
            threshold = spec.threshold_for(severity)
            if threshold is None or not threshold.matches(sig.value):
                continue
            rule = self.rules.match(spec.name, severity)
            return Anomaly(signal=sig, severity=severity, rule_id=rule.id if rule else None)
        return None

    async def _candidate_for(self, anomaly: Anomaly) -> Optional[RemediationAction]:
        rule = self.rules.match(anomaly.signal.name, anomaly.severity)
        if rule is not None:
            return self.rules.action_for(rule)

        if anomaly.severity not in ADVISOR_SEVERITIES:
            return None

        history = self.recent_history(anomaly.signal.name)
        try:
            suggestions = await self.advisor.suggest(anomaly, history)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            MetricsService.incr("healing.advisor_unavailable")
            logger.warning(
                "advisor_unavailable",
                extra={
                    "signal": anomaly.signal.name,
                    "error": repr(exc),
                    "failure_kind": FailureKind.ADVISOR_UNAVAILABLE.value,
                },
            )
            return None

        floor = self.config.advisor_confidence_floor
        for suggestion in suggestions:
            if suggestion.confidence >= floor:
                return suggestion

        if suggestions:
            logger.info(
                "advisor_below_confidence_floor",
                extra={
                    "signal": anomaly.signal.name,
                    "top_confidence": suggestions[0].confidence,
                    "floor": floor,
                },
            )
        return None

    def _evaluate(self, action: RemediationAction, state: Dict[str, float]) -> PolicyVerdict:
        try:
            return self.guard.evaluate(action, state)
        except Exception as exc:
            logger.exception("policy_evaluation_failed", extra={"kind": action.kind})
            return PolicyVerdict(
                action=action,
                decision=PolicyDecision.DENY,
                reason=f"policy_error:{type(exc).__name__}",
                evaluated_at=self._clock(),
            )

    async def _execute_allowed(self, slots: List[_Slot], cycle_id: str) -> None:
        tasks: List[Tuple[_Slot, asyncio.Task]] = [
            (slot, asyncio.create_task(self.executor.execute(slot.action, cycle_id=cycle_id)))
            for slot in slots
            if slot.verdict.allowed
        ]
        if not tasks:
            return

        try:
            await asyncio.gather(*(t for _, t in tasks))
        except asyncio.CancelledError:
            for _, task in tasks:
                task.cancel()
            await asyncio.gather(*(t for _, t in tasks), return_exceptions=True)
            self._collect(tasks)
            raise
        self._collect(tasks)

    def _collect(self, tasks: List[Tuple[_Slot, asyncio.Task]]) -> None:
        for slot, task in tasks:
            if task.cancelled():
                slot.executed = ExecutedAction(slot.action, ExecutionOutcome.FAILURE, "cancelled")
                continue
            exc = task.exception()
            if exc is not None:
                slot.executed = ExecutedAction(
                    slot.action, ExecutionOutcome.FAILURE, f"{type(exc).__name__}: {exc}"
                )
            else:
                slot.executed = task.result()

            MetricsService.incr(f"healing.outcomes.{slot.executed.outcome.value}")
            if slot.executed.outcome == ExecutionOutcome.FAILURE:
                logger.warning(
                    "action_failed",
                    extra={
                        "kind": slot.action.kind,
                        "detail": slot.executed.detail,
                        "failure_kind": FailureKind.ACTION_FAILURE.value,
                    },
                )

    @staticmethod
    def _executed_for(slot: _Slot) -> ExecutedAction:
        if slot.executed is not None:
            return slot.executed
        if slot.verdict.allowed:
            # Approved but never reached the executor (cycle interrupted).
            return ExecutedAction(slot.action, ExecutionOutcome.FAILURE, "not_executed")
        return ExecutedAction(
            slot.action,
            ExecutionOutcome.SKIPPED,
            f"{slot.verdict.decision.value}: {slot.verdict.reason}",
        )

    # ============================================================
    # HISTORY / PERSISTENCE
    # ============================================================
    def _remember_history(self, record: DecisionRecord) -> None:
        size = self.config.history_size
        if size <= 0:
            return
        for anomaly in record.anomalies:
            bucket = self._history.get(anomaly.signal.name)
            if bucket is None:
                bucket = deque(maxlen=size)
                self._history[anomaly.signal.name] = bucket
            bucket.append(anomaly)

    async def _persist(self, record: DecisionRecord, *, max_attempts: Optional[int] = None) -> bool:
        attempts = max_attempts or self.config.persist_max_attempts
        last_error: Optional[BaseException] = None

        for attempt in range(1, attempts + 1):
            try:
                await asyncio.to_thread(self.audit_log.append_decision, record)
                return True
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "decision_record_persist_failed",
                    extra={"cycle_id": record.cycle_id, "attempt": attempt, "error": repr(exc)},
                )
                if attempt < attempts:
                    delay = min(
                        self.config.persist_base_delay_seconds * (2 ** (attempt - 1)),
                        self.config.persist_max_delay_seconds,
                    )
                    await self._sleep(delay)

        self.persist_failures += 1
        MetricsService.incr("healing.persist_failures")
        self.alerting.raise_alert(
            FailureKind.PERSISTENCE_FAILURE,
            f"decision record {record.cycle_id} not persisted after {attempts} attempts",
            {"cycle_id": record.cycle_id, "error": repr(last_error), "summary": record.summary()},
        )
        return False
