from __future__ import annotations

import json
import time
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from services.autonomy.reasoning_advisor import (
    NullReasoningAdvisor,
    OpenAIReasoningAdvisor,
    build_reasoning_advisor,
    parse_suggestions,
)
from services.autonomy.types import ActionSource, Anomaly, Severity, Signal


def _anomaly(value: float = 0.3) -> Anomaly:
    sig = Signal("error_rate", value, "ratio", datetime(2026, 3, 2, tzinfo=timezone.utc))
    return Anomaly(signal=sig, severity=Severity.HIGH)


class _FakeCompletions:
    def __init__(self, content=None, exc=None, delay=0.0):
        self.content = content
        self.exc = exc
        self.delay = delay
        self.kwargs = None

    def create(self, **kwargs):
        self.kwargs = kwargs
        if self.delay:
            time.sleep(self.delay)
        if self.exc is not None:
            raise self.exc
        msg = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=msg)])


def _client(completions: _FakeCompletions):
    return SimpleNamespace(chat=SimpleNamespace(completions=completions))


def test_parse_ranks_by_confidence_and_drops_malformed_items() -> None:
    text = json.dumps(
        {
            "actions": [
                {"kind": "throttle_intake", "params": {"factor": 0.5}, "confidence": 0.55},
                {"kind": "restart_service", "params": {"service": "api"}, "confidence": 0.9},
                {"kind": "", "confidence": 0.99},
                {"kind": "scale_up_workers", "confidence": "high"},
                {"kind": "flush_cache", "params": {"nested": {"a": 1}}, "confidence": 0.8},
                "not-an-object",
            ]
        }
    )

    actions = parse_suggestions(text)

    assert [a.kind for a in actions] == ["restart_service", "throttle_intake"]
    assert all(a.source == ActionSource.ADVISOR for a in actions)


def test_parse_clamps_confidence_into_unit_interval() -> None:
    actions = parse_suggestions(
        '{"actions": [{"kind": "a", "confidence": 1.7}, {"kind": "b", "confidence": -0.2}]}'
    )
    assert [(a.kind, a.confidence) for a in actions] == [("a", 1.0), ("b", 0.0)]


@pytest.mark.parametrize(
    "text",
    ["", "not json", "[]", '{"actions": "none"}', '{"nope": []}', "```json\n{broken\n```"],
)
def test_parse_malformed_output_yields_empty(text) -> None:
    assert parse_suggestions(text) == []


def test_parse_accepts_fenced_json() -> None:
    text = '```json\n{"actions": [{"kind": "throttle_intake", "confidence": 0.7}]}\n```'
    assert [a.kind for a in parse_suggestions(text)] == ["throttle_intake"]


@pytest.mark.anyio
async def test_openai_advisor_requests_json_and_parses(monkeypatch) -> None:
    monkeypatch.setenv("OPENAI_ADVISOR_MODEL", "gpt-test")
    completions = _FakeCompletions(
        content='{"actions": [{"kind": "throttle_intake", "params": {"factor": 0.5}, "confidence": 0.8, "reason": "shed load"}]}'
    )
    advisor = OpenAIReasoningAdvisor(
        allowed_kinds=["throttle_intake", "scale_down_workers"], client=_client(completions)
    )

    actions = await advisor.suggest(_anomaly(), [_anomaly(0.1)])

    assert [a.kind for a in actions] == ["throttle_intake"]
    assert actions[0].reason == "shed load"
    assert completions.kwargs["model"] == "gpt-test"
    assert completions.kwargs["response_format"] == {"type": "json_object"}
    assert completions.kwargs["temperature"] == 0.0
    user = json.loads(completions.kwargs["messages"][1]["content"])
    assert user["allowed_action_kinds"] == ["scale_down_workers", "throttle_intake"]
    assert len(user["recent_history"]) == 1


@pytest.mark.anyio
async def test_openai_advisor_fails_soft_on_error() -> None:
    advisor = OpenAIReasoningAdvisor(client=_client(_FakeCompletions(exc=RuntimeError("503"))))
    assert await advisor.suggest(_anomaly(), []) == []


@pytest.mark.anyio
async def test_openai_advisor_fails_soft_on_timeout() -> None:
    advisor = OpenAIReasoningAdvisor(
        client=_client(_FakeCompletions(content='{"actions": []}', delay=0.5)),
        timeout_seconds=0.05,
    )
    assert await advisor.suggest(_anomaly(), []) == []


@pytest.mark.anyio
async def test_openai_advisor_fails_soft_on_malformed_output() -> None:
    advisor = OpenAIReasoningAdvisor(client=_client(_FakeCompletions(content="I think you should restart")))
    assert await advisor.suggest(_anomaly(), []) == []


def test_build_without_api_key_returns_null_advisor(monkeypatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    advisor = build_reasoning_advisor(allowed_kinds=[], timeout_seconds=1)
    assert isinstance(advisor, NullReasoningAdvisor)


def test_openai_advisor_without_key_or_client_raises(monkeypatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with pytest.raises(RuntimeError):
        OpenAIReasoningAdvisor()
