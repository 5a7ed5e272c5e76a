# services/autonomy/kill_switch.py

from __future__ import annotations

import logging
import os
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class AutonomyKillSwitch:
    """
    Global kill-switch for autonomous remediation.

    RULES:
    - Hard override, checked by the policy gate before any rule lookup
    - Disabling never stops auditing; cycles keep running and recording
    - Timestamped for audit
    """

    def __init__(self, enabled: bool = True):
        self._lock = threading.Lock()
        self._enabled: bool = bool(enabled)
        self._reason: Optional[str] = None
        self._last_changed_at: str = _now_iso()

    @classmethod
    def from_env(cls) -> "AutonomyKillSwitch":
        raw = (os.getenv("AUTONOMY_ENABLED") or "true").strip().lower()
        return cls(enabled=raw not in {"0", "false", "no", "off", "disabled"})

    # -------------------------------------------------
    # READ
    # -------------------------------------------------
    def is_enabled(self) -> bool:
        return self._enabled

    def status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "enabled": self._enabled,
                "reason": self._reason,
                "last_changed_at": self._last_changed_at,
            }

    # -------------------------------------------------
    # HARD CONTROL
    # -------------------------------------------------
    def disable(self, *, reason: Optional[str] = None) -> None:
        with self._lock:
            self._enabled = False
            self._reason = reason
            self._last_changed_at = _now_iso()
        logger.warning("autonomy_disabled", extra={"reason": reason})

    def enable(self, *, reason: Optional[str] = None) -> None:
        with self._lock:
            self._enabled = True
            self._reason = reason
            self._last_changed_at = _now_iso()
        logger.info("autonomy_enabled", extra={"reason": reason})
