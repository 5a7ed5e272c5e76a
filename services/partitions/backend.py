# services/partitions/backend.py

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Protocol

import sqlalchemy as sa

from services.partitions.types import PartitionDescriptor

logger = logging.getLogger(__name__)

_IDENT = re.compile(r"^[a-z_][a-z0-9_]{0,62}$")


class PartitionBackendError(RuntimeError):
    pass


class _CountMismatch(PartitionBackendError):
    pass


@dataclass(frozen=True)
class ArchiveResult:
    ok: bool
    detail: str = ""


class PartitionBackend(Protocol):
    def ensure_partition(self, descriptor: PartitionDescriptor) -> None:
        ...

    def archive_partition(self, descriptor: PartitionDescriptor) -> ArchiveResult:
        ...


def _ident(name: str) -> str:
    if not _IDENT.match(name or ""):
        raise PartitionBackendError(f"unsafe identifier: {name!r}")
    return f'"{name}"'


class PostgresPartitionBackend:
    """
    Native PostgreSQL range partitions.

    The parent table must already be declared PARTITION BY RANGE on its
    time column. Archival moves a partition into `archive_schema`:
    detach, copy, verify row counts, drop. All steps share one
    transaction, so a failed verification leaves the partition attached.
    """

    def __init__(self, engine: sa.Engine, *, archive_schema: str = "archive"):
        self.engine = engine
        self.archive_schema = archive_schema

    def ensure_partition(self, descriptor: PartitionDescriptor) -> None:
        parent = _ident(descriptor.table_name)
        part = _ident(descriptor.partition_name)
        start = descriptor.range_start.isoformat()
        end = descriptor.range_end.isoformat()

        ddl = (
            f"CREATE TABLE IF NOT EXISTS {part} PARTITION OF {parent} "
            f"FOR VALUES FROM ('{start}') TO ('{end}')"
        )
        with self.engine.begin() as conn:
            conn.execute(sa.text(ddl))

        logger.info(
            "partition_ensured",
            extra={"partition": descriptor.partition_name, "range_start": start, "range_end": end},
        )

    def archive_partition(self, descriptor: PartitionDescriptor) -> ArchiveResult:
        parent = _ident(descriptor.table_name)
        part = _ident(descriptor.partition_name)
        schema = _ident(self.archive_schema)
        target = f"{schema}.{part}"

        try:
            return self._archive(descriptor, parent, part, schema, target)
        except _CountMismatch as exc:
            return ArchiveResult(False, str(exc))

    def _archive(self, descriptor, parent, part, schema, target) -> ArchiveResult:
        with self.engine.begin() as conn:
            source_exists = conn.execute(
                sa.text("select to_regclass(:n) is not null"),
                {"n": f"public.{descriptor.partition_name}"},
            ).scalar()
            target_exists = conn.execute(
                sa.text("select to_regclass(:n) is not null"),
                {"n": f"{self.archive_schema}.{descriptor.partition_name}"},
            ).scalar()

            if not source_exists:
                if target_exists:
                    # Archived by an earlier tick whose catalog update did not land.
                    return ArchiveResult(True, "already_archived")
                return ArchiveResult(False, "partition_missing")

            attached = conn.execute(
                sa.text(
                    "select exists (select 1 from pg_inherits "
                    "where inhrelid = to_regclass(:n))"
                ),
                {"n": f"public.{descriptor.partition_name}"},
            ).scalar()
            if attached:
                conn.execute(sa.text(f"ALTER TABLE {parent} DETACH PARTITION {part}"))

            conn.execute(sa.text(f"CREATE SCHEMA IF NOT EXISTS {schema}"))
            conn.execute(
                sa.text(f"CREATE TABLE IF NOT EXISTS {target} (LIKE {part} INCLUDING ALL)")
            )
            conn.execute(sa.text(f"DELETE FROM {target}"))
            conn.execute(sa.text(f"INSERT INTO {target} SELECT * FROM {part}"))

            src_count = int(conn.execute(sa.text(f"select count(*) from {part}")).scalar() or 0)
            dst_count = int(conn.execute(sa.text(f"select count(*) from {target}")).scalar() or 0)
            if src_count != dst_count:
                raise _CountMismatch(f"row_count_mismatch:{src_count}!={dst_count}")

            conn.execute(sa.text(f"DROP TABLE {part}"))

        logger.info(
            "partition_archived",
            extra={"partition": descriptor.partition_name, "rows": src_count},
        )
        return ArchiveResult(True, f"rows={src_count}")


class CatalogOnlyPartitionBackend:
    """
    Lifecycle bookkeeping without physical partitions (SQLite, local runs).

    There is no partition data to move, so archival always confirms.
    """

    def ensure_partition(self, descriptor: PartitionDescriptor) -> None:
        logger.debug("partition_ensure_noop", extra={"partition": descriptor.partition_name})

    def archive_partition(self, descriptor: PartitionDescriptor) -> ArchiveResult:
        return ArchiveResult(True, "catalog_only")
