# services/autonomy/reasoning_advisor.py

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from typing import Any, Dict, List, Optional, Protocol, Sequence

from openai import OpenAI

from services.autonomy.types import ActionSource, Anomaly, RemediationAction

logger = logging.getLogger(__name__)

_CODE_FENCE_RE = re.compile(
    r"^```(?:json)?\s*(.*?)\s*```$", flags=re.DOTALL | re.IGNORECASE
)

_MAX_SUGGESTIONS = 5

_ADVISOR_SYSTEM_PROMPT = """You are a remediation advisor for a real-time chat backend.

You receive one anomaly (a health signal that crossed a severity threshold)
and the recent history of anomalies for the same signal.

Hard constraints:
- You only PROPOSE. Nothing you return is executed without a policy check.
- Use only action kinds from the allowed list you are given.
- Output ONLY a single JSON object, no markdown, no prose outside JSON.

Return EXACTLY this shape:

{
  "actions": [
    {
      "kind": string,
      "params": object (string/number/boolean values only),
      "confidence": number between 0 and 1,
      "reason": string
    }
  ]
}

Return {"actions": []} if no remediation is appropriate.
"""


class ReasoningAdvisor(Protocol):
    async def suggest(
        self, anomaly: Anomaly, recent_history: Sequence[Anomaly]
    ) -> List[RemediationAction]:
        ...


class NullReasoningAdvisor:
    """Advisor used when no reasoning backend is configured."""

    async def suggest(
        self, anomaly: Anomaly, recent_history: Sequence[Anomaly]
    ) -> List[RemediationAction]:
        return []


# ============================================================
# OUTPUT PARSING (FAIL-SOFT)
# ============================================================


def _strip_code_fences(text: str) -> str:
    t = (text or "").strip()
    m = _CODE_FENCE_RE.match(t)
    if m:
        return (m.group(1) or "").strip()
    return t


def _coerce_action(item: Any) -> Optional[RemediationAction]:
    if not isinstance(item, dict):
        return None

    kind = item.get("kind")
    if not isinstance(kind, str) or not kind.strip():
        return None

    confidence = item.get("confidence")
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        return None
    confidence = min(1.0, max(0.0, float(confidence)))

    params = item.get("params") or {}
    if not isinstance(params, dict):
        return None

    reason = item.get("reason")
    try:
        return RemediationAction(
            kind=kind.strip(),
            params=params,
            source=ActionSource.ADVISOR,
            confidence=confidence,
            reason=reason if isinstance(reason, str) else None,
        )
    except ValueError:
        return None


def parse_suggestions(text: str) -> List[RemediationAction]:
    """
    Parses advisor output into candidates ranked by confidence (desc).

    Unparseable output yields []; individual malformed items are dropped.
    """
    try:
        obj = json.loads(_strip_code_fences(text))
    except (TypeError, ValueError):
        return []

    if not isinstance(obj, dict):
        return []
    items = obj.get("actions")
    if not isinstance(items, list):
        return []

    actions = [a for a in (_coerce_action(i) for i in items) if a is not None]
    actions.sort(key=lambda a: a.confidence, reverse=True)
    return actions[:_MAX_SUGGESTIONS]


# ============================================================
# OPENAI ADVISOR
# ============================================================


class OpenAIReasoningAdvisor:
    """OpenAI Chat Completions advisor with strict JSON-only output."""

    def __init__(
        self,
        *,
        allowed_kinds: Sequence[str] = (),
        model_env: str = "OPENAI_ADVISOR_MODEL",
        default_model: str = "gpt-4o-mini",
        timeout_seconds: float = 20.0,
        client: Optional[Any] = None,
    ) -> None:
        self.allowed_kinds = sorted(set(allowed_kinds))
        self._model_env = model_env
        self._default_model = default_model
        self.timeout_seconds = timeout_seconds

        if client is not None:
            self.client = client
            return

        api_key = os.getenv("OPENAI_API_KEY")
        if not api_key:
            raise RuntimeError("OPENAI_API_KEY is missing")
        self.client = OpenAI(api_key=api_key, timeout=timeout_seconds, max_retries=0)

    def _model(self) -> str:
        m = (os.getenv(self._model_env) or "").strip()
        return m or self._default_model

    def _user_prompt(self, anomaly: Anomaly, recent_history: Sequence[Anomaly]) -> str:
        payload: Dict[str, Any] = {
            "anomaly": anomaly.to_dict(),
            "recent_history": [a.to_dict() for a in recent_history],
            "allowed_action_kinds": self.allowed_kinds,
        }
        return json.dumps(payload, ensure_ascii=False, default=str)

    def _complete(self, messages: List[Dict[str, str]]) -> str:
        resp = self.client.chat.completions.create(
            model=self._model(),
            messages=messages,
            response_format={"type": "json_object"},
            temperature=0.0,
            max_tokens=800,
        )
        choices = getattr(resp, "choices", None) or []
        if not choices:
            return ""
        msg = getattr(choices[0], "message", None)
        content = getattr(msg, "content", None)
        return content if isinstance(content, str) else ""

    async def suggest(
        self, anomaly: Anomaly, recent_history: Sequence[Anomaly]
    ) -> List[RemediationAction]:
        messages = [
            {"role": "system", "content": _ADVISOR_SYSTEM_PROMPT},
            {"role": "user", "content": self._user_prompt(anomaly, recent_history)},
        ]

        try:
            text = await asyncio.wait_for(
                asyncio.to_thread(self._complete, messages),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "advisor_timeout",
                extra={"signal": anomaly.signal.name, "timeout": self.timeout_seconds},
            )
            return []
        except Exception as exc:
            logger.warning(
                "advisor_unavailable",
                extra={"signal": anomaly.signal.name, "error": repr(exc)},
            )
            return []

        suggestions = parse_suggestions(text)
        if not suggestions:
            logger.info("advisor_no_suggestions", extra={"signal": anomaly.signal.name})
        return suggestions


def build_reasoning_advisor(
    *, allowed_kinds: Sequence[str], timeout_seconds: float
) -> ReasoningAdvisor:
    if not (os.getenv("OPENAI_API_KEY") or "").strip():
        logger.warning("OPENAI_API_KEY not set; reasoning advisor disabled")
        return NullReasoningAdvisor()
    return OpenAIReasoningAdvisor(
        allowed_kinds=allowed_kinds, timeout_seconds=timeout_seconds
    )
