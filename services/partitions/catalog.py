# services/partitions/catalog.py

from __future__ import annotations

import logging
from typing import List, Protocol, Sequence

import sqlalchemy as sa

from models.autonomy_tables import metadata, partition_descriptors
from services.db import as_utc, insert_if_absent
from services.partitions.types import (
    PartitionDescriptor,
    PartitionState,
    PartitionTransition,
)

logger = logging.getLogger(__name__)


class PartitionCatalogConflict(RuntimeError):
    """A stored descriptor was not in the state the transition expected."""


class PartitionCatalog(Protocol):
    def list_partitions(self, table_name: str) -> List[PartitionDescriptor]:
        ...

    def apply_transitions(self, transitions: Sequence[PartitionTransition]) -> None:
        ...


class SqlPartitionCatalog:
    """
    Descriptor store for managed tables.

    RULES:
    - One row per (table_name, range_start)
    - A batch of transitions commits atomically or not at all
    - Updates are compare-and-set on the expected from_state
    """

    def __init__(self, engine: sa.Engine):
        self.engine = engine

    def create_schema(self) -> None:
        metadata.create_all(self.engine, tables=[partition_descriptors])

    def list_partitions(self, table_name: str) -> List[PartitionDescriptor]:
        t = partition_descriptors
        stmt = (
            sa.select(t.c.table_name, t.c.range_start, t.c.range_end, t.c.state)
            .where(t.c.table_name == table_name)
            .order_by(t.c.range_start.asc())
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).all()

        return [
            PartitionDescriptor(
                table_name=r.table_name,
                range_start=as_utc(r.range_start),
                range_end=as_utc(r.range_end),
                state=PartitionState(r.state),
            )
            for r in rows
        ]

    def apply_transitions(self, transitions: Sequence[PartitionTransition]) -> None:
        if not transitions:
            return

        t = partition_descriptors
        with self.engine.begin() as conn:
            for tr in transitions:
                d = tr.descriptor
                if tr.from_state is None:
                    created = insert_if_absent(
                        conn,
                        t,
                        {
                            "table_name": d.table_name,
                            "partition_name": d.partition_name,
                            "range_start": d.range_start,
                            "range_end": d.range_end,
                            "state": tr.to_state.value,
                            "updated_at": tr.occurred_at,
                        },
                        key_columns=("table_name", "range_start"),
                    )
                    if not created:
                        raise PartitionCatalogConflict(
                            f"{d.partition_name} already exists"
                        )
                    continue

                res = conn.execute(
                    t.update()
                    .where(t.c.table_name == d.table_name)
                    .where(t.c.range_start == d.range_start)
                    .where(t.c.state == tr.from_state.value)
                    .values(state=tr.to_state.value, updated_at=tr.occurred_at)
                )
                if res.rowcount != 1:
                    raise PartitionCatalogConflict(
                        f"{d.partition_name}: expected state {tr.from_state.value}"
                    )

        logger.debug(
            "partition_catalog_applied",
            extra={"transitions": [tr.to_dict() for tr in transitions]},
        )
