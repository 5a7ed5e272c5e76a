# services/alerting_service.py

from __future__ import annotations

import logging
import threading
from collections import deque
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

from services.metrics_service import MetricsService

logger = logging.getLogger("autonomy.alerts")


class FailureKind(Enum):
    MISSING_SIGNAL = "missing_signal"
    ADVISOR_UNAVAILABLE = "advisor_unavailable"
    ACTION_FAILURE = "action_failure"
    PERSISTENCE_FAILURE = "persistence_failure"
    POLICY_MISCONFIGURATION = "policy_misconfiguration"
    PARTITION_ARCHIVE_FAILURE = "partition_archive_failure"


class AlertingService:
    """
    Process-level alert escalation.

    RULES:
    - Alerts never raise and never stop the caller
    - Every alert is logged at CRITICAL and kept in a bounded ring
    """

    MAX_ALERTS = 200

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._alerts: Deque[Dict[str, Any]] = deque(maxlen=self.MAX_ALERTS)

    def raise_alert(
        self,
        kind: FailureKind,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        alert = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "kind": kind.value,
            "message": message,
            "details": dict(details or {}),
        }
        with self._lock:
            self._alerts.append(alert)

        MetricsService.incr(f"alerts.{kind.value}")
        logger.critical(
            "ALERT %s: %s", kind.value, message, extra={"alert": alert["details"]}
        )
        return alert

    def recent(self, limit: int = 50) -> List[Dict[str, Any]]:
        if limit <= 0:
            return []
        with self._lock:
            return list(self._alerts)[-limit:]

    def evaluate(self) -> Dict[str, Any]:
        alerts = self.recent(self.MAX_ALERTS)
        by_kind: Dict[str, int] = {}
        for a in alerts:
            by_kind[a["kind"]] = by_kind.get(a["kind"], 0) + 1
        return {
            "ok": not alerts,
            "alert_count": len(alerts),
            "by_kind": by_kind,
            "read_only": True,
        }
