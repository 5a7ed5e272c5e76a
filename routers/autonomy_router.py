# routers/autonomy_router.py

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter
from pydantic import BaseModel, ConfigDict, Field

from services.app_bootstrap import get_runtime

router = APIRouter(prefix="/autonomy", tags=["Autonomy"])


class KillSwitchRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool
    reason: Optional[str] = Field(default=None, max_length=500)


# ============================================================
# STATUS (READ-ONLY)
# ============================================================
@router.get("/status")
def autonomy_status() -> Dict[str, Any]:
    rt = get_runtime()
    return {
        "ok": True,
        "kill_switch": rt.kill_switch.status(),
        "healing_loop": rt.healing_loop.status(),
        "jobs": {
            "healing_loop": rt.healing_job.status(),
            "partition_manager": rt.partition_job.status(),
        },
        "capacity": rt.capacity.snapshot() if rt.capacity else None,
        "rate_counter": rt.guard.counter.snapshot(),
        "read_only": True,
    }


# ============================================================
# KILL SWITCH (OPERATOR OVERRIDE)
# ============================================================
@router.post("/kill-switch")
def set_kill_switch(req: KillSwitchRequest) -> Dict[str, Any]:
    ks = get_runtime().kill_switch
    if req.enabled:
        ks.enable(reason=req.reason)
    else:
        ks.disable(reason=req.reason)
    return {"ok": True, "kill_switch": ks.status()}


# ============================================================
# MANUAL CYCLE
# ============================================================
@router.post("/cycle")
async def run_cycle_now() -> Dict[str, Any]:
    record = await get_runtime().healing_loop.run_cycle()
    return {"ok": True, "record": record.to_dict()}
