# services/partitions/types.py

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class PartitionState(Enum):
    PLANNED = "planned"
    ACTIVE = "active"
    RETIRING = "retiring"
    ARCHIVED = "archived"


# Legal forward moves; ARCHIVED is terminal.
ALLOWED_TRANSITIONS = {
    PartitionState.PLANNED: PartitionState.ACTIVE,
    PartitionState.ACTIVE: PartitionState.RETIRING,
    PartitionState.RETIRING: PartitionState.ARCHIVED,
}


def _iso(ts: datetime) -> str:
    return ts.isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class PartitionDescriptor:
    table_name: str
    range_start: datetime
    range_end: datetime
    state: PartitionState

    def __post_init__(self) -> None:
        if self.range_end <= self.range_start:
            raise ValueError("partition range_end must be after range_start")

    @property
    def partition_name(self) -> str:
        return f"{self.table_name}_p{self.range_start:%Y%m%d%H%M}"

    def contains(self, ts: datetime) -> bool:
        return self.range_start <= ts < self.range_end

    def overlaps(self, other: "PartitionDescriptor") -> bool:
        return self.range_start < other.range_end and other.range_start < self.range_end

    def with_state(self, state: PartitionState) -> "PartitionDescriptor":
        if ALLOWED_TRANSITIONS.get(self.state) != state:
            raise ValueError(
                f"illegal partition transition {self.state.value} -> {state.value}"
            )
        return replace(self, state=state)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "table_name": self.table_name,
            "partition_name": self.partition_name,
            "range_start": _iso(self.range_start),
            "range_end": _iso(self.range_end),
            "state": self.state.value,
        }


@dataclass(frozen=True)
class PartitionTransition:
    """One audited state change; from_state None means "created"."""

    descriptor: PartitionDescriptor
    from_state: Optional[PartitionState]
    to_state: PartitionState
    occurred_at: datetime
    detail: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "table_name": self.descriptor.table_name,
            "partition_name": self.descriptor.partition_name,
            "range_start": _iso(self.descriptor.range_start),
            "range_end": _iso(self.descriptor.range_end),
            "from_state": self.from_state.value if self.from_state else None,
            "to_state": self.to_state.value,
            "occurred_at": _iso(self.occurred_at),
            "detail": self.detail,
        }
