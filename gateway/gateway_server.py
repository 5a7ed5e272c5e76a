# gateway/gateway_server.py
# Gateway server for the autonomous operations controller

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict

from fastapi import FastAPI

from routers.alerting_router import alerting_router
from routers.audit_router import router as audit_router
from routers.autonomy_router import router as autonomy_router
from routers.partitions_router import router as partitions_router
from services.app_bootstrap import build_runtime, get_runtime, set_runtime
from system_version import RELEASE_CHANNEL, SYSTEM_NAME, VERSION

# ================================================================
# Logging
# ================================================================
logger = logging.getLogger("gateway")
logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO").upper())


# ================================================================
# Lifespan: build runtime, start both periodic jobs independently
# ================================================================
@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    runtime = build_runtime()
    set_runtime(runtime)

    if os.getenv("AUTONOMY_JOBS_DISABLED", "").strip().lower() not in {"1", "true", "yes"}:
        runtime.healing_job.start()
        runtime.partition_job.start()
    else:
        logger.warning("periodic jobs disabled by AUTONOMY_JOBS_DISABLED")

    logger.info(
        "gateway_started",
        extra={"system": SYSTEM_NAME, "version": VERSION, "channel": RELEASE_CHANNEL},
    )
    try:
        yield
    finally:
        # A cancelled healing cycle still persists its partial record.
        await runtime.healing_job.stop()
        await runtime.partition_job.stop()
        runtime.engine.dispose()
        set_runtime(None)
        logger.info("gateway_stopped")


# ================================================================
# FastAPI app
# ================================================================
app = FastAPI(title=SYSTEM_NAME, version=VERSION, lifespan=lifespan)

app.include_router(autonomy_router)
app.include_router(audit_router)
app.include_router(partitions_router)
app.include_router(alerting_router)


@app.get("/health")
def health() -> Dict[str, Any]:
    rt = get_runtime()
    return {
        "ok": True,
        "system": SYSTEM_NAME,
        "version": VERSION,
        "autonomy_enabled": rt.kill_switch.is_enabled(),
        "jobs": {
            "healing_loop": rt.healing_job.status()["scheduled"],
            "partition_manager": rt.partition_job.status()["scheduled"],
        },
    }
