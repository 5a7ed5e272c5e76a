# routers/audit_router.py

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Query

from services.app_bootstrap import get_runtime
from services.audit_log import AuditPersistenceError

router = APIRouter(prefix="/audit", tags=["Audit"])


# ============================================================
# DECISION RECORDS (ONE PER HEALING CYCLE)
# ============================================================
@router.get("/decisions")
async def list_decisions(
    limit: int = Query(default=100, ge=1, le=1000),
    since: Optional[datetime] = None,
    cycle_id: Optional[str] = None,
) -> Dict[str, Any]:
    audit_log = get_runtime().audit_log
    try:
        records = await asyncio.to_thread(
            audit_log.list_decisions, limit=limit, since=since, cycle_id=cycle_id
        )
    except AuditPersistenceError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc

    return {"ok": True, "count": len(records), "data": records, "read_only": True}


# ============================================================
# PARTITION TRANSITIONS
# ============================================================
@router.get("/partitions")
async def list_partition_events(
    table_name: Optional[str] = None,
    limit: int = Query(default=100, ge=1, le=1000),
) -> Dict[str, Any]:
    audit_log = get_runtime().audit_log
    events = await asyncio.to_thread(
        audit_log.list_partition_events, table_name=table_name, limit=limit
    )
    return {"ok": True, "count": len(events), "data": events, "read_only": True}
