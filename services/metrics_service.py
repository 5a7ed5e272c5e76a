# services/metrics_service.py

from __future__ import annotations

import copy
import threading
from collections import defaultdict, deque
from datetime import datetime, timezone
from typing import Any, DefaultDict, Deque, Dict


class MetricsService:
    """
    In-process counters and a bounded event ring for the ops console.

    RULES:
    - No blocking
    - No decisions
    - Best-effort only; bad input is ignored, never raised
    """

    MAX_EVENTS_PER_TYPE = 200

    _lock = threading.Lock()
    _counters: DefaultDict[str, int] = defaultdict(int)
    _events: DefaultDict[str, Deque[Dict[str, Any]]] = defaultdict(
        lambda: deque(maxlen=MetricsService.MAX_EVENTS_PER_TYPE)
    )

    @classmethod
    def incr(cls, key: str, value: int = 1) -> None:
        if not isinstance(key, str) or not key:
            return
        if not isinstance(value, int) or value == 0:
            return
        with cls._lock:
            cls._counters[key] += value

    @classmethod
    def emit(cls, event_type: str, payload: Dict[str, Any]) -> None:
        if not isinstance(event_type, str) or not event_type:
            return
        event = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            "payload": copy.deepcopy(payload) if isinstance(payload, dict) else {},
        }
        with cls._lock:
            cls._events[event_type].append(event)

    @classmethod
    def counter(cls, key: str) -> int:
        with cls._lock:
            return int(cls._counters.get(key, 0))

    @classmethod
    def snapshot(cls) -> Dict[str, Any]:
        with cls._lock:
            return {
                "counters": dict(cls._counters),
                "events_by_type": {k: list(v) for k, v in cls._events.items()},
            }

    @classmethod
    def reset(cls) -> None:
        with cls._lock:
            cls._counters.clear()
            cls._events.clear()
