from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# SSOT table definitions; alembic migrations mirror these.
metadata = sa.MetaData()

_PK = sa.BigInteger().with_variant(sa.Integer(), "sqlite")
_JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")

# No-predecessor marker for creation events; keeps the unique key non-null.
NO_STATE = "none"

decision_records = sa.Table(
    "autonomy_decision_records",
    metadata,
    sa.Column("id", _PK, primary_key=True, autoincrement=True),
    sa.Column("cycle_id", sa.String(64), nullable=False),
    sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("finished_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("anomaly_count", sa.Integer, nullable=False, server_default=sa.text("0")),
    sa.Column("candidate_count", sa.Integer, nullable=False, server_default=sa.text("0")),
    sa.Column("executed_count", sa.Integer, nullable=False, server_default=sa.text("0")),
    sa.Column("cancelled", sa.Boolean, nullable=False, server_default=sa.false()),
    sa.Column("record", _JSON, nullable=False),
    sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
    ),
    sa.UniqueConstraint("cycle_id", name="uq_autonomy_decision_records_cycle_id"),
    sa.Index("ix_autonomy_decision_records_started_at", "started_at"),
)

partition_descriptors = sa.Table(
    "partition_descriptors",
    metadata,
    sa.Column("id", _PK, primary_key=True, autoincrement=True),
    sa.Column("table_name", sa.String(128), nullable=False),
    sa.Column("partition_name", sa.String(160), nullable=False),
    sa.Column("range_start", sa.DateTime(timezone=True), nullable=False),
    sa.Column("range_end", sa.DateTime(timezone=True), nullable=False),
    sa.Column("state", sa.String(16), nullable=False),
    sa.Column(
        "updated_at",
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
    ),
    sa.UniqueConstraint(
        "table_name", "range_start", name="uq_partition_descriptors_table_range"
    ),
    sa.CheckConstraint(
        "state in ('planned', 'active', 'retiring', 'archived')",
        name="ck_partition_descriptors_state",
    ),
)

partition_transitions = sa.Table(
    "partition_transitions",
    metadata,
    sa.Column("id", _PK, primary_key=True, autoincrement=True),
    sa.Column("table_name", sa.String(128), nullable=False),
    sa.Column("partition_name", sa.String(160), nullable=False),
    sa.Column("range_start", sa.DateTime(timezone=True), nullable=False),
    sa.Column("range_end", sa.DateTime(timezone=True), nullable=False),
    sa.Column("from_state", sa.String(16), nullable=False),
    sa.Column("to_state", sa.String(16), nullable=False),
    sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
    sa.Column("detail", sa.Text, nullable=True),
    sa.UniqueConstraint(
        "table_name",
        "range_start",
        "from_state",
        "to_state",
        name="uq_partition_transitions_event",
    ),
    sa.Index("ix_partition_transitions_table_time", "table_name", "occurred_at"),
)
