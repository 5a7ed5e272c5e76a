# services/autonomy/telemetry_reader.py

from __future__ import annotations

import logging
import math
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Mapping, Optional, Protocol, Sequence

import httpx

from services.autonomy.config import SignalSpec
from services.autonomy.types import Signal

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SignalUnavailable(RuntimeError):
    """A signal could not be resolved; the cycle treats it as MISSING."""


class TelemetryReader(Protocol):
    async def read_signal(self, name: str, window: Optional[timedelta] = None) -> Signal:
        ...


# ============================================================
# PROMETHEUS
# ============================================================


def _parse_sample(value: Any, *, signal: str) -> float:
    # Prometheus samples are [<unix_ts>, "<value>"]
    if not isinstance(value, (list, tuple)) or len(value) != 2:
        raise SignalUnavailable(f"{signal}: malformed sample")
    try:
        parsed = float(value[1])
    except (TypeError, ValueError) as exc:
        raise SignalUnavailable(f"{signal}: non-numeric sample {value[1]!r}") from exc
    if math.isnan(parsed) or math.isinf(parsed):
        raise SignalUnavailable(f"{signal}: sample is not finite")
    return parsed


class PrometheusTelemetryReader:
    """
    Reads configured signals from the Prometheus HTTP API.

    Point-in-time reads use /api/v1/query; windowed reads use
    /api/v1/query_range and keep the newest sample.
    """

    def __init__(
        self,
        base_url: str,
        signals: Sequence[SignalSpec],
        *,
        timeout_seconds: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.base_url = base_url.rstrip("/")
        self.signals: Dict[str, SignalSpec] = {s.name: s for s in signals}
        self._timeout = timeout_seconds
        self._transport = transport
        self._clock = clock

    async def _get(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        async with httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self._timeout,
            transport=self._transport,
        ) as client:
            resp = await client.get(path, params=params)
        if resp.status_code != 200:
            raise SignalUnavailable(f"prometheus returned HTTP {resp.status_code}")
        try:
            body = resp.json()
        except ValueError as exc:
            raise SignalUnavailable("prometheus returned invalid JSON") from exc
        if not isinstance(body, dict) or body.get("status") != "success":
            raise SignalUnavailable(f"prometheus query failed: {body!r:.200}")
        data = body.get("data")
        if not isinstance(data, dict):
            raise SignalUnavailable("prometheus response has no data")
        return data

    async def read_signal(self, name: str, window: Optional[timedelta] = None) -> Signal:
        spec = self.signals.get(name)
        if spec is None or not spec.query:
            raise SignalUnavailable(f"{name}: no query configured")

        now = self._clock()
        if window is None and spec.window_seconds > 0:
            window = timedelta(seconds=spec.window_seconds)

        if window:
            step = max(int(window.total_seconds() // 10), 1)
            data = await self._get(
                "/api/v1/query_range",
                {
                    "query": spec.query,
                    "start": (now - window).timestamp(),
                    "end": now.timestamp(),
                    "step": step,
                },
            )
            result = data.get("result") or []
            if not result or not isinstance(result[0], dict):
                raise SignalUnavailable(f"{name}: empty range result")
            values = result[0].get("values") or []
            if not values:
                raise SignalUnavailable(f"{name}: empty range result")
            value = _parse_sample(values[-1], signal=name)
        else:
            data = await self._get("/api/v1/query", {"query": spec.query})
            result = data.get("result") or []
            if not result or not isinstance(result[0], dict):
                raise SignalUnavailable(f"{name}: empty result")
            value = _parse_sample(result[0].get("value"), signal=name)

        return Signal(name=name, value=value, unit=spec.unit, observed_at=now)


# ============================================================
# STATIC (LOCAL RUNS)
# ============================================================


class StaticTelemetryReader:
    """In-memory signal values; a name with no value reads as unavailable."""

    def __init__(
        self,
        values: Optional[Mapping[str, float]] = None,
        *,
        units: Optional[Mapping[str, str]] = None,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self._lock = threading.Lock()
        self._values: Dict[str, float] = dict(values or {})
        self._units: Dict[str, str] = dict(units or {})
        self._clock = clock

    @classmethod
    def from_specs(cls, signals: Sequence[SignalSpec]) -> "StaticTelemetryReader":
        return cls(
            {s.name: s.static_value for s in signals if s.static_value is not None},
            units={s.name: s.unit for s in signals},
        )

    def set_value(self, name: str, value: Optional[float]) -> None:
        with self._lock:
            if value is None:
                self._values.pop(name, None)
            else:
                self._values[name] = float(value)

    async def read_signal(self, name: str, window: Optional[timedelta] = None) -> Signal:
        with self._lock:
            value = self._values.get(name)
        if value is None:
            raise SignalUnavailable(f"{name}: no value")
        return Signal(
            name=name,
            value=value,
            unit=self._units.get(name, ""),
            observed_at=self._clock(),
        )
