# routers/partitions_router.py

from __future__ import annotations

import asyncio
from typing import Any, Dict

from fastapi import APIRouter

from services.app_bootstrap import get_runtime

router = APIRouter(prefix="/partitions", tags=["Partitions"])


@router.get("")
async def list_partitions() -> Dict[str, Any]:
    manager = get_runtime().partition_manager
    tables = await asyncio.to_thread(manager.describe)
    return {
        "ok": True,
        "tables": tables,
        "archive_failures": manager.archive_failures(),
        "read_only": True,
    }


@router.post("/tick")
async def tick_now() -> Dict[str, Any]:
    results = await get_runtime().partition_manager.tick()
    return {
        "ok": all(r.error is None for r in results),
        "results": [r.to_dict() for r in results],
    }
