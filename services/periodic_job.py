# services/periodic_job.py

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class PeriodicJob:
    """
    Fixed-cadence async runner.

    RULES:
    - Backpressure: a run that would overlap the previous one is rejected
    - Failure containment: an exception is logged and the next run still fires
    - Independent: one job's cadence never waits on another job
    """

    def __init__(
        self,
        name: str,
        fn: Callable[[], Awaitable[Any]],
        interval_seconds: float,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self.name = name
        self._fn = fn
        self.interval_seconds = float(interval_seconds)
        self._sleep = sleep

        self._lock = asyncio.Lock()
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.runs = 0
        self.failures = 0
        self.rejected = 0
        self.last_started_at: Optional[str] = None
        self.last_finished_at: Optional[str] = None
        self.last_error: Optional[str] = None

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()

    # ---------------------------------------------------------
    # SINGLE RUN (BACKPRESSURE GUARDED)
    # ---------------------------------------------------------
    async def run_once(self) -> Dict[str, Any]:
        async with self._lock:
            if self._running:
                self.rejected += 1
                logger.info("periodic_job_overlap_rejected", extra={"job": self.name})
                return {"status": "rejected", "reason": "already_running"}
            self._running = True

        self.last_started_at = self._now()
        try:
            output = await self._fn()
            self.runs += 1
            self.last_error = None
            return {"status": "success", "output": output}
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.failures += 1
            self.last_error = f"{type(exc).__name__}: {exc}"
            logger.exception("periodic_job_failed", extra={"job": self.name})
            return {"status": "error", "error": self.last_error}
        finally:
            self.last_finished_at = self._now()
            self._running = False

    # ---------------------------------------------------------
    # LIFECYCLE
    # ---------------------------------------------------------
    async def _loop(self) -> None:
        logger.info(
            "periodic_job_started",
            extra={"job": self.name, "interval_seconds": self.interval_seconds},
        )
        while True:
            await self.run_once()
            await self._sleep(self.interval_seconds)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop(), name=f"periodic:{self.name}")
        return self._task

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("periodic_job_stopped", extra={"job": self.name})

    def status(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "interval_seconds": self.interval_seconds,
            "scheduled": self._task is not None and not self._task.done(),
            "running": self._running,
            "runs": self.runs,
            "failures": self.failures,
            "rejected": self.rejected,
            "last_started_at": self.last_started_at,
            "last_finished_at": self.last_finished_at,
            "last_error": self.last_error,
        }
