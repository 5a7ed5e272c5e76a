from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Query

from services.app_bootstrap import get_runtime
from services.metrics_service import MetricsService

router = APIRouter(prefix="/alerts", tags=["Alerting"])


@router.get("")
def alerting_status(limit: int = Query(default=50, ge=1, le=200)) -> Dict[str, Any]:
    """
    READ-ONLY OPS SNAPSHOT

    Returns:
    - alert status by failure kind
    - most recent alerts
    - in-process metrics
    """
    alerting = get_runtime().alerting
    return {
        **alerting.evaluate(),
        "alerts": alerting.recent(limit),
        "metrics": MetricsService.snapshot(),
    }


# Export alias (stable import for gateway_server.py)
alerting_router = router
