# services/partitions/partition_manager.py

"""
Partition lifecycle for time-sharded tables.

Per table: PLANNED -> ACTIVE -> RETIRING -> ARCHIVED (terminal).

Tick order per table:
  1) plan ahead (detect by range, never by create-and-catch)
  2) promote PLANNED once wall-clock enters the range, demote one expired
     ACTIVE when no partition is RETIRING; committed as one batch
  3) archive the RETIRING partition; ARCHIVED only after confirmed success

A partition whose range has ended while another is RETIRING stays ACTIVE
until the slot frees up.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Set

from services.alerting_service import AlertingService, FailureKind
from services.audit_log import AuditLog
from services.autonomy.config import PartitionTableSpec
from services.metrics_service import MetricsService
from services.partitions.backend import ArchiveResult, PartitionBackend
from services.partitions.catalog import PartitionCatalog
from services.partitions.types import (
    PartitionDescriptor,
    PartitionState,
    PartitionTransition,
)

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def align_floor(ts: datetime, span: timedelta) -> datetime:
    """Start of the span-aligned bucket containing ts (aligned to the Unix epoch)."""
    return _EPOCH + ((ts - _EPOCH) // span) * span


def check_partition_invariants(
    partitions: Sequence[PartitionDescriptor], now: datetime
) -> List[str]:
    """
    Returns human-readable violations; empty means healthy.

    Checked over live (non-ARCHIVED) partitions: exactly one ACTIVE contains
    `now`, ranges do not overlap and leave no gaps.
    """
    live = sorted(
        (p for p in partitions if p.state != PartitionState.ARCHIVED),
        key=lambda p: p.range_start,
    )
    problems: List[str] = []

    current = [p for p in live if p.state == PartitionState.ACTIVE and p.contains(now)]
    if len(current) != 1:
        problems.append(f"expected exactly one ACTIVE partition at {now.isoformat()}, found {len(current)}")

    for prev, nxt in zip(live, live[1:]):
        if prev.overlaps(nxt):
            problems.append(f"overlap: {prev.partition_name} / {nxt.partition_name}")
        elif prev.range_end != nxt.range_start:
            problems.append(f"gap: {prev.partition_name} -> {nxt.partition_name}")

    if sum(1 for p in live if p.state == PartitionState.RETIRING) > 1:
        problems.append("more than one RETIRING partition")
    return problems


@dataclass
class TickResult:
    table_name: str
    transitions: List[PartitionTransition] = field(default_factory=list)
    skipped: bool = False
    archive: Optional[ArchiveResult] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "table_name": self.table_name,
            "skipped": self.skipped,
            "transitions": [t.to_dict() for t in self.transitions],
            "archive": (
                {"ok": self.archive.ok, "detail": self.archive.detail}
                if self.archive
                else None
            ),
            "error": self.error,
        }


class PartitionManager:
    """
    RULES:
    - One tick in flight per table; an overlapping tick for the same table is skipped
    - Different tables tick in parallel
    - Never silently drops data: archive failure keeps the partition RETIRING
    """

    def __init__(
        self,
        tables: Sequence[PartitionTableSpec],
        catalog: PartitionCatalog,
        backend: PartitionBackend,
        audit_log: AuditLog,
        *,
        alerting: Optional[AlertingService] = None,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.tables = list(tables)
        self.catalog = catalog
        self.backend = backend
        self.audit_log = audit_log
        self.alerting = alerting or AlertingService()
        self._clock = clock

        self._guard = threading.Lock()
        self._in_flight: Set[str] = set()
        self._archive_failures: Dict[str, int] = {}

    # ============================================================
    # PUBLIC
    # ============================================================
    async def tick(self, now: Optional[datetime] = None) -> List[TickResult]:
        now = now or self._clock()
        return list(
            await asyncio.gather(*(self.tick_table(spec, now) for spec in self.tables))
        )

    async def tick_table(
        self, spec: PartitionTableSpec, now: Optional[datetime] = None
    ) -> TickResult:
        now = now or self._clock()
        try:
            return await asyncio.to_thread(self._guarded_tick, spec, now)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("partition_tick_failed", extra={"table": spec.table_name})
            MetricsService.incr("partitions.tick_errors")
            return TickResult(table_name=spec.table_name, error=f"{type(exc).__name__}: {exc}")

    def describe(self) -> Dict[str, List[Dict[str, Any]]]:
        return {
            spec.table_name: [p.to_dict() for p in self.catalog.list_partitions(spec.table_name)]
            for spec in self.tables
        }

    def archive_failures(self) -> Dict[str, int]:
        with self._guard:
            return dict(self._archive_failures)

    # ============================================================
    # TICK (runs off the event loop)
    # ============================================================
    def _guarded_tick(self, spec: PartitionTableSpec, now: datetime) -> TickResult:
        # The slot is claimed and released inside the worker thread, so a
        # cancelled awaiter cannot free it while the thread is still running.
        with self._guard:
            if spec.table_name in self._in_flight:
                logger.info("partition_tick_skipped_in_flight", extra={"table": spec.table_name})
                MetricsService.incr("partitions.ticks_skipped")
                return TickResult(table_name=spec.table_name, skipped=True)
            self._in_flight.add(spec.table_name)

        try:
            return self._tick_sync(spec, now)
        finally:
            with self._guard:
                self._in_flight.discard(spec.table_name)

    def _tick_sync(self, spec: PartitionTableSpec, now: datetime) -> TickResult:
        result = TickResult(table_name=spec.table_name)
        partitions = self.catalog.list_partitions(spec.table_name)

        # 1) + 2)
        planned = self._plan_ahead(spec, partitions, now)
        for desc in planned:
            self.backend.ensure_partition(desc)

        lifecycle = self._promote_and_demote(partitions + planned, now)
        batch = [
            PartitionTransition(d, None, PartitionState.PLANNED, now, "planned")
            for d in planned
        ] + lifecycle
        if batch:
            self.catalog.apply_transitions(batch)
            self._committed(result, batch)

        # 3)
        retiring = self._current_retiring(partitions, lifecycle)
        if retiring is not None:
            archived = self._archive(spec, retiring, now, result)
            if archived is not None:
                self.catalog.apply_transitions([archived])
                self._committed(result, [archived])

        if result.transitions:
            logger.info(
                "partition_tick_applied",
                extra={
                    "table": spec.table_name,
                    "transitions": [
                        f"{t.descriptor.partition_name}:{t.from_state.value if t.from_state else '-'}->{t.to_state.value}"
                        for t in result.transitions
                    ],
                },
            )
        return result

    # ============================================================
    # STEPS
    # ============================================================
    def _plan_ahead(
        self,
        spec: PartitionTableSpec,
        partitions: Sequence[PartitionDescriptor],
        now: datetime,
    ) -> List[PartitionDescriptor]:
        span = timedelta(seconds=spec.retention_seconds)
        live = [p for p in partitions if p.state != PartitionState.ARCHIVED]

        if live:
            cursor = max(p.range_end for p in live)
        else:
            cursor = align_floor(now, span)
            if partitions:
                cursor = max(cursor, max(p.range_end for p in partitions))

        # At least the partition after the current one must exist.
        horizon = max(
            now + timedelta(seconds=spec.lookahead_seconds),
            align_floor(now, span) + span,
        )

        out: List[PartitionDescriptor] = []
        while cursor <= horizon:
            desc = PartitionDescriptor(
                table_name=spec.table_name,
                range_start=cursor,
                range_end=cursor + span,
                state=PartitionState.PLANNED,
            )
            if any(desc.overlaps(p) for p in partitions):
                raise RuntimeError(f"planned range overlaps existing partition: {desc.partition_name}")
            out.append(desc)
            cursor = desc.range_end
        return out

    def _promote_and_demote(
        self, partitions: Sequence[PartitionDescriptor], now: datetime
    ) -> List[PartitionTransition]:
        transitions: List[PartitionTransition] = []
        states: Dict[datetime, PartitionDescriptor] = {p.range_start: p for p in partitions}

        for p in sorted(partitions, key=lambda d: d.range_start):
            if p.state == PartitionState.PLANNED and p.range_start <= now:
                promoted = p.with_state(PartitionState.ACTIVE)
                states[p.range_start] = promoted
                transitions.append(
                    PartitionTransition(promoted, PartitionState.PLANNED, PartitionState.ACTIVE, now, "range_entered")
                )

        if any(p.state == PartitionState.RETIRING for p in states.values()):
            return transitions

        expired = sorted(
            (
                p
                for p in states.values()
                if p.state == PartitionState.ACTIVE and p.range_end <= now
            ),
            key=lambda d: d.range_start,
        )
        if expired:
            oldest = expired[0]
            transitions.append(
                PartitionTransition(
                    oldest.with_state(PartitionState.RETIRING),
                    PartitionState.ACTIVE,
                    PartitionState.RETIRING,
                    now,
                    "range_exited",
                )
            )
        return transitions

    @staticmethod
    def _current_retiring(
        partitions: Sequence[PartitionDescriptor],
        lifecycle: Sequence[PartitionTransition],
    ) -> Optional[PartitionDescriptor]:
        for tr in lifecycle:
            if tr.to_state == PartitionState.RETIRING:
                return tr.descriptor
        for p in partitions:
            if p.state == PartitionState.RETIRING:
                return p
        return None

    def _archive(
        self,
        spec: PartitionTableSpec,
        desc: PartitionDescriptor,
        now: datetime,
        result: TickResult,
    ) -> Optional[PartitionTransition]:
        try:
            outcome = self.backend.archive_partition(desc)
        except Exception as exc:
            logger.exception("partition_archive_error", extra={"partition": desc.partition_name})
            outcome = ArchiveResult(False, f"{type(exc).__name__}: {exc}")
        result.archive = outcome

        if outcome.ok:
            with self._guard:
                self._archive_failures.pop(desc.partition_name, None)
            return PartitionTransition(
                desc.with_state(PartitionState.ARCHIVED),
                PartitionState.RETIRING,
                PartitionState.ARCHIVED,
                now,
                outcome.detail or "archived",
            )

        with self._guard:
            failures = self._archive_failures.get(desc.partition_name, 0) + 1
            self._archive_failures[desc.partition_name] = failures

        MetricsService.incr("partitions.archive_failures")
        logger.warning(
            "partition_archive_failed",
            extra={
                "partition": desc.partition_name,
                "detail": outcome.detail,
                "consecutive_failures": failures,
            },
        )
        if failures % spec.archive_failure_alert_ticks == 0:
            self.alerting.raise_alert(
                FailureKind.PARTITION_ARCHIVE_FAILURE,
                f"archival of {desc.partition_name} failing for {failures} ticks",
                {"partition": desc.partition_name, "detail": outcome.detail, "failures": failures},
            )
        return None

    def _committed(
        self, result: TickResult, transitions: Sequence[PartitionTransition]
    ) -> None:
        # Audited as soon as the catalog holds them; a later step may still fail.
        for tr in transitions:
            result.transitions.append(tr)
            MetricsService.incr(f"partitions.transitions.{tr.to_state.value}")
            self._audit(tr)

    def _audit(self, transition: PartitionTransition) -> None:
        try:
            self.audit_log.append_partition_event(transition)
        except Exception:
            # Catalog already holds the state; the audit gap is surfaced, not retried.
            logger.exception(
                "partition_audit_failed",
                extra={"partition": transition.descriptor.partition_name},
            )
            self.alerting.raise_alert(
                FailureKind.PERSISTENCE_FAILURE,
                f"partition event for {transition.descriptor.partition_name} not audited",
                transition.to_dict(),
            )
