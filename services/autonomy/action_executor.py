# services/autonomy/action_executor.py

from __future__ import annotations

import asyncio
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Protocol, Tuple

from services.autonomy.types import ExecutedAction, ExecutionOutcome, RemediationAction

logger = logging.getLogger(__name__)

_MAX_DETAIL_CHARS = 500
_DEFAULT_HISTORY_SIZE = 256


@dataclass(frozen=True)
class InvocationResult:
    success: bool
    detail: str = ""


@dataclass(frozen=True)
class ExecutionContext:
    """
    What an action needs to stay idempotent across adjacent cycles.

    `attempt` counts executions of the same kind + params, this one
    included. `previous_outcome` is the outcome of the one before.
    """

    cycle_id: Optional[str]
    attempt: int
    previous_outcome: Optional[ExecutionOutcome] = None
    previous_detail: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "attempt": self.attempt,
            "previous_outcome": self.previous_outcome.value if self.previous_outcome else None,
            "previous_detail": self.previous_detail,
        }


class ExecutionSurface(Protocol):
    async def invoke(
        self, kind: str, params: Mapping[str, Any], context: ExecutionContext
    ) -> InvocationResult:
        ...


def _truncate(text: str) -> str:
    text = (text or "").strip()
    if len(text) <= _MAX_DETAIL_CHARS:
        return text
    return text[: _MAX_DETAIL_CHARS - 3] + "..."


class ActionExecutor:
    """
    Applies authorized actions through one execution surface.

    RULES:
    - Never decides; only PolicyGuard-approved actions reach it
    - Bounded by a timeout; timeout → FAILURE "timeout"
    - Any surface error → FAILURE, never raised to the caller
    - Cancellation propagates
    """

    def __init__(
        self,
        surface: ExecutionSurface,
        *,
        timeout_seconds: float = 30.0,
        history_size: int = _DEFAULT_HISTORY_SIZE,
    ):
        self.surface = surface
        self.timeout_seconds = timeout_seconds
        self.history_size = max(1, int(history_size))
        self._lock = threading.Lock()
        # kind+params → (attempts, last outcome, last detail); least recently used evicted first
        self._history: OrderedDict[str, Tuple[int, ExecutionOutcome, str]] = OrderedDict()

    def _next_context(self, action: RemediationAction, cycle_id: Optional[str]) -> ExecutionContext:
        key = action.params_key()
        with self._lock:
            prev = self._history.get(key)
        if prev is None:
            return ExecutionContext(cycle_id=cycle_id, attempt=1)
        attempts, outcome, detail = prev
        return ExecutionContext(
            cycle_id=cycle_id,
            attempt=attempts + 1,
            previous_outcome=outcome,
            previous_detail=detail,
        )

    def _remember(self, action: RemediationAction, attempt: int, executed: ExecutedAction) -> None:
        key = action.params_key()
        with self._lock:
            self._history[key] = (attempt, executed.outcome, executed.detail)
            self._history.move_to_end(key)
            while len(self._history) > self.history_size:
                self._history.popitem(last=False)

    async def execute(
        self, action: RemediationAction, *, cycle_id: Optional[str] = None
    ) -> ExecutedAction:
        context = self._next_context(action, cycle_id)

        try:
            result = await asyncio.wait_for(
                self.surface.invoke(action.kind, dict(action.params), context),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            executed = ExecutedAction(action, ExecutionOutcome.FAILURE, "timeout")
        except Exception as exc:
            logger.warning(
                "action_invoke_failed",
                extra={"kind": action.kind, "error": repr(exc)},
            )
            executed = ExecutedAction(
                action, ExecutionOutcome.FAILURE, _truncate(f"{type(exc).__name__}: {exc}")
            )
        else:
            if not isinstance(result, InvocationResult):
                executed = ExecutedAction(
                    action, ExecutionOutcome.FAILURE, "invalid_surface_result"
                )
            elif result.success:
                executed = ExecutedAction(
                    action, ExecutionOutcome.SUCCESS, _truncate(result.detail)
                )
            else:
                executed = ExecutedAction(
                    action, ExecutionOutcome.FAILURE, _truncate(result.detail) or "failed"
                )

        self._remember(action, context.attempt, executed)
        logger.info(
            "action_executed",
            extra={
                "kind": action.kind,
                "outcome": executed.outcome.value,
                "attempt": context.attempt,
                "cycle_id": cycle_id,
            },
        )
        return executed
