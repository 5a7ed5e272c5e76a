# services/autonomy/execution_surfaces.py

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import os
import threading
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Union

import httpx

from services.autonomy.action_executor import ExecutionContext, InvocationResult
from services.autonomy.config import CapacitySpec

logger = logging.getLogger(__name__)

Handler = Callable[
    [Mapping[str, Any], ExecutionContext],
    Union[InvocationResult, Awaitable[InvocationResult]],
]


# ============================================================
# IN-PROCESS HANDLERS (TAGGED DISPATCH)
# ============================================================


class HandlerExecutionSurface:
    """Dispatch table: action kind → handler. Unknown kinds fail."""

    def __init__(self, handlers: Optional[Mapping[str, Handler]] = None):
        self._handlers: Dict[str, Handler] = dict(handlers or {})

    def register(self, kind: str, handler: Handler) -> None:
        if not callable(handler):
            raise ValueError("handler must be callable")
        self._handlers[kind] = handler

    def kinds(self) -> list[str]:
        return sorted(self._handlers)

    async def invoke(
        self, kind: str, params: Mapping[str, Any], context: ExecutionContext
    ) -> InvocationResult:
        handler = self._handlers.get(kind)
        if handler is None:
            return InvocationResult(False, f"no_handler:{kind}")
        out = handler(params, context)
        if inspect.isawaitable(out):
            out = await out
        return out


class CapacityState:
    """
    Worker count and intake rate targets, clamped to configured bounds.

    Repeating an adjustment can only move the target up to a bound,
    never past it.
    """

    def __init__(self, spec: CapacitySpec):
        self.spec = spec
        self._lock = threading.Lock()
        self.workers: int = spec.workers_initial
        self.intake_rate: float = spec.intake_initial

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "workers": self.workers,
                "workers_floor": self.spec.workers_floor,
                "workers_ceiling": self.spec.workers_ceiling,
                "intake_rate": self.intake_rate,
                "intake_min": self.spec.intake_min,
                "intake_max": self.spec.intake_max,
            }

    def scale_workers(self, delta: int) -> tuple[int, int]:
        with self._lock:
            before = self.workers
            target = before + delta
            self.workers = max(self.spec.workers_floor, min(self.spec.workers_ceiling, target))
            return before, self.workers

    def scale_intake(self, factor: float) -> tuple[float, float]:
        with self._lock:
            before = self.intake_rate
            target = before * factor
            self.intake_rate = max(self.spec.intake_min, min(self.spec.intake_max, target))
            return before, self.intake_rate


def _int_param(params: Mapping[str, Any], name: str, default: int) -> int:
    raw = params.get(name, default)
    if isinstance(raw, bool):
        raise ValueError(f"{name} must be an integer")
    value = int(raw)
    if value < 0:
        raise ValueError(f"{name} must be >= 0")
    return value


def _factor_param(params: Mapping[str, Any], name: str, default: float) -> float:
    raw = params.get(name, default)
    if isinstance(raw, bool):
        raise ValueError(f"{name} must be a number")
    value = float(raw)
    if value <= 0:
        raise ValueError(f"{name} must be > 0")
    return value


def capacity_handlers(state: CapacityState) -> Dict[str, Handler]:
    def scale_down_workers(params: Mapping[str, Any], ctx: ExecutionContext) -> InvocationResult:
        before, after = state.scale_workers(-_int_param(params, "step", 1))
        if before == after:
            return InvocationResult(True, f"workers already at floor ({after})")
        return InvocationResult(True, f"workers {before} -> {after}")

    def scale_up_workers(params: Mapping[str, Any], ctx: ExecutionContext) -> InvocationResult:
        before, after = state.scale_workers(_int_param(params, "step", 1))
        if before == after:
            return InvocationResult(True, f"workers already at ceiling ({after})")
        return InvocationResult(True, f"workers {before} -> {after}")

    def throttle_intake(params: Mapping[str, Any], ctx: ExecutionContext) -> InvocationResult:
        factor = _factor_param(params, "factor", 0.5)
        if factor >= 1:
            return InvocationResult(False, "throttle factor must be < 1")
        before, after = state.scale_intake(factor)
        if before == after:
            return InvocationResult(True, f"intake already at minimum ({after:g}/s)")
        return InvocationResult(True, f"intake {before:g}/s -> {after:g}/s")

    def restore_intake(params: Mapping[str, Any], ctx: ExecutionContext) -> InvocationResult:
        factor = _factor_param(params, "factor", 2.0)
        if factor <= 1:
            return InvocationResult(False, "restore factor must be > 1")
        before, after = state.scale_intake(factor)
        if before == after:
            return InvocationResult(True, f"intake already at maximum ({after:g}/s)")
        return InvocationResult(True, f"intake {before:g}/s -> {after:g}/s")

    return {
        "scale_down_workers": scale_down_workers,
        "scale_up_workers": scale_up_workers,
        "throttle_intake": throttle_intake,
        "restore_intake": restore_intake,
    }


# ============================================================
# REMEDIATION SCRIPTS
# ============================================================


class ScriptExecutionSurface:
    """
    Runs a configured script per action kind.

    No shell: the script path is exec'd directly, params go in as JSON
    on stdin. Exit code 0 is success.
    """

    def __init__(self, scripts: Mapping[str, str], *, cwd: Optional[str] = None):
        self.scripts: Dict[str, str] = dict(scripts)
        self.cwd = cwd

    def kinds(self) -> list[str]:
        return sorted(self.scripts)

    async def invoke(
        self, kind: str, params: Mapping[str, Any], context: ExecutionContext
    ) -> InvocationResult:
        script = self.scripts.get(kind)
        if not script:
            return InvocationResult(False, f"no_script:{kind}")

        env = dict(os.environ)
        env["REMEDIATION_KIND"] = kind
        env["REMEDIATION_ATTEMPT"] = str(context.attempt)
        env["REMEDIATION_PREVIOUS_OUTCOME"] = (
            context.previous_outcome.value if context.previous_outcome else ""
        )

        proc = await asyncio.create_subprocess_exec(
            script,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=self.cwd,
            env=env,
        )
        payload = json.dumps(
            {"kind": kind, "params": dict(params), "context": context.to_dict()}
        ).encode("utf-8")

        try:
            stdout, stderr = await proc.communicate(payload)
        except BaseException:
            # Timeout or shutdown: do not leave the script running.
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise

        out = (stdout or b"").decode("utf-8", errors="replace").strip()
        err = (stderr or b"").decode("utf-8", errors="replace").strip()
        if proc.returncode == 0:
            return InvocationResult(True, out.splitlines()[-1] if out else "ok")
        tail = (err or out).splitlines()[-1] if (err or out) else ""
        return InvocationResult(False, f"exit {proc.returncode}: {tail}".strip())


# ============================================================
# REMEDIATION API
# ============================================================


class HttpExecutionSurface:
    """POSTs actions to an external remediation API."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._transport = transport

    async def invoke(
        self, kind: str, params: Mapping[str, Any], context: ExecutionContext
    ) -> InvocationResult:
        async with httpx.AsyncClient(
            base_url=self.base_url, timeout=self._timeout, transport=self._transport
        ) as client:
            resp = await client.post(
                f"/actions/{kind}",
                json={"kind": kind, "params": dict(params), "context": context.to_dict()},
            )

        if resp.status_code >= 300:
            return InvocationResult(False, f"http_{resp.status_code}")

        try:
            body = resp.json()
        except ValueError:
            return InvocationResult(False, "invalid_json_response")
        if not isinstance(body, dict):
            return InvocationResult(False, "invalid_json_response")

        detail = body.get("detail")
        return InvocationResult(
            success=body.get("success") is True,
            detail=detail if isinstance(detail, str) else "",
        )
