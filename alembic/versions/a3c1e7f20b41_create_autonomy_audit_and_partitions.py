"""
create autonomy audit + partition lifecycle tables (append-only audit)

Revision ID: a3c1e7f20b41
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "a3c1e7f20b41"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "autonomy_decision_records",
        sa.Column("id", sa.BigInteger(), sa.Identity(start=1), primary_key=True),
        sa.Column("cycle_id", sa.String(length=64), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("anomaly_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("candidate_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("executed_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("cancelled", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("record", postgresql.JSONB(), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.UniqueConstraint("cycle_id", name="uq_autonomy_decision_records_cycle_id"),
    )
    op.create_index(
        "ix_autonomy_decision_records_started_at",
        "autonomy_decision_records",
        ["started_at"],
    )

    op.create_table(
        "partition_descriptors",
        sa.Column("id", sa.BigInteger(), sa.Identity(start=1), primary_key=True),
        sa.Column("table_name", sa.String(length=128), nullable=False),
        sa.Column("partition_name", sa.String(length=160), nullable=False),
        sa.Column("range_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("range_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("state", sa.String(length=16), nullable=False),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.UniqueConstraint(
            "table_name", "range_start", name="uq_partition_descriptors_table_range"
        ),
        sa.CheckConstraint(
            "state in ('planned', 'active', 'retiring', 'archived')",
            name="ck_partition_descriptors_state",
        ),
    )

    op.create_table(
        "partition_transitions",
        sa.Column("id", sa.BigInteger(), sa.Identity(start=1), primary_key=True),
        sa.Column("table_name", sa.String(length=128), nullable=False),
        sa.Column("partition_name", sa.String(length=160), nullable=False),
        sa.Column("range_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("range_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("from_state", sa.String(length=16), nullable=False),
        sa.Column("to_state", sa.String(length=16), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("detail", sa.Text(), nullable=True),
        sa.UniqueConstraint(
            "table_name",
            "range_start",
            "from_state",
            "to_state",
            name="uq_partition_transitions_event",
        ),
    )
    op.create_index(
        "ix_partition_transitions_table_time",
        "partition_transitions",
        ["table_name", "occurred_at"],
    )

    # Append-only: audit rows are never updated or deleted by the application.
    op.execute(
        """
        CREATE OR REPLACE FUNCTION autonomy_audit_append_only()
        RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION '% is append-only', TG_TABLE_NAME;
        END;
        $$ LANGUAGE plpgsql;
        """
    )
    for table in ("autonomy_decision_records", "partition_transitions"):
        op.execute(
            f"""
            CREATE TRIGGER trg_{table}_append_only
            BEFORE UPDATE OR DELETE ON {table}
            FOR EACH ROW EXECUTE FUNCTION autonomy_audit_append_only();
            """
        )


def downgrade() -> None:
    for table in ("autonomy_decision_records", "partition_transitions"):
        op.execute(f"DROP TRIGGER IF EXISTS trg_{table}_append_only ON {table}")
    op.execute("DROP FUNCTION IF EXISTS autonomy_audit_append_only()")

    op.drop_index("ix_partition_transitions_table_time", table_name="partition_transitions")
    op.drop_table("partition_transitions")
    op.drop_table("partition_descriptors")
    op.drop_index(
        "ix_autonomy_decision_records_started_at", table_name="autonomy_decision_records"
    )
    op.drop_table("autonomy_decision_records")
