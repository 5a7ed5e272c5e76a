# services/audit_log.py

"""
Append-only audit sink shared by the healing loop and the partition manager.

Neither writer owns the sink or waits on the other; both only append.
Replays are safe: every write is insert-if-absent on a natural key.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

import sqlalchemy as sa
from sqlalchemy.exc import SQLAlchemyError

from models.autonomy_tables import (
    NO_STATE,
    decision_records,
    metadata,
    partition_transitions,
)
from services.autonomy.types import DecisionRecord, ExecutionOutcome
from services.db import as_utc, insert_if_absent
from services.partitions.types import PartitionTransition

logger = logging.getLogger(__name__)


class AuditPersistenceError(RuntimeError):
    pass


class AuditLog(Protocol):
    def append_decision(self, record: DecisionRecord) -> bool:
        ...

    def append_partition_event(self, event: PartitionTransition) -> bool:
        ...

    def list_decisions(
        self,
        *,
        limit: int = 100,
        since: Optional[datetime] = None,
        cycle_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        ...

    def list_partition_events(
        self, *, table_name: Optional[str] = None, limit: int = 100
    ) -> List[Dict[str, Any]]:
        ...


class SqlAuditLog:
    """SQLAlchemy Core implementation (PostgreSQL in production, SQLite in tests)."""

    def __init__(self, engine: sa.Engine):
        self.engine = engine

    def create_schema(self) -> None:
        metadata.create_all(self.engine)

    # ============================================================
    # WRITE (APPEND-ONLY)
    # ============================================================
    def append_decision(self, record: DecisionRecord) -> bool:
        if not record.sealed:
            raise AuditPersistenceError("only sealed decision records can be persisted")

        executed_count = len(
            [e for e in record.executed if e.outcome != ExecutionOutcome.SKIPPED]
        )
        values = {
            "cycle_id": record.cycle_id,
            "started_at": record.started_at,
            "finished_at": record.finished_at,
            "anomaly_count": len(record.anomalies),
            "candidate_count": len(record.candidates),
            "executed_count": executed_count,
            "cancelled": record.cancelled,
            "record": record.to_dict(),
        }
        try:
            with self.engine.begin() as conn:
                written = insert_if_absent(
                    conn, decision_records, values, key_columns=("cycle_id",)
                )
        except SQLAlchemyError as exc:
            raise AuditPersistenceError(f"decision record {record.cycle_id}: {exc}") from exc

        if not written:
            logger.info("decision_record_already_present", extra={"cycle_id": record.cycle_id})
        return written

    def append_partition_event(self, event: PartitionTransition) -> bool:
        d = event.descriptor
        values = {
            "table_name": d.table_name,
            "partition_name": d.partition_name,
            "range_start": d.range_start,
            "range_end": d.range_end,
            "from_state": event.from_state.value if event.from_state else NO_STATE,
            "to_state": event.to_state.value,
            "occurred_at": event.occurred_at,
            "detail": event.detail or None,
        }
        try:
            with self.engine.begin() as conn:
                return insert_if_absent(
                    conn,
                    partition_transitions,
                    values,
                    key_columns=("table_name", "range_start", "from_state", "to_state"),
                )
        except SQLAlchemyError as exc:
            raise AuditPersistenceError(
                f"partition event {d.partition_name} -> {event.to_state.value}: {exc}"
            ) from exc

    # ============================================================
    # READ (AUDIT REVIEW)
    # ============================================================
    def list_decisions(
        self,
        *,
        limit: int = 100,
        since: Optional[datetime] = None,
        cycle_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        if limit <= 0:
            return []

        t = decision_records
        stmt = sa.select(t.c.record, t.c.started_at, t.c.cycle_id)
        if cycle_id:
            stmt = stmt.where(t.c.cycle_id == cycle_id)
        if since is not None:
            stmt = stmt.where(t.c.started_at >= as_utc(since))
        stmt = stmt.order_by(t.c.started_at.asc(), t.c.cycle_id.asc()).limit(limit)

        with self.engine.connect() as conn:
            rows = conn.execute(stmt).all()
        return [dict(r.record) for r in rows]

    def list_partition_events(
        self, *, table_name: Optional[str] = None, limit: int = 100
    ) -> List[Dict[str, Any]]:
        if limit <= 0:
            return []

        t = partition_transitions
        stmt = sa.select(t)
        if table_name:
            stmt = stmt.where(t.c.table_name == table_name)
        stmt = stmt.order_by(t.c.occurred_at.asc(), t.c.id.asc()).limit(limit)

        with self.engine.connect() as conn:
            rows = conn.execute(stmt).mappings().all()

        out: List[Dict[str, Any]] = []
        for r in rows:
            out.append(
                {
                    "table_name": r["table_name"],
                    "partition_name": r["partition_name"],
                    "range_start": as_utc(r["range_start"]).isoformat(),
                    "range_end": as_utc(r["range_end"]).isoformat(),
                    "from_state": None if r["from_state"] == NO_STATE else r["from_state"],
                    "to_state": r["to_state"],
                    "occurred_at": as_utc(r["occurred_at"]).isoformat(),
                    "detail": r["detail"],
                }
            )
        return out
