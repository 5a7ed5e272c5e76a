from __future__ import annotations

import importlib
import sys

import dotenv
import pytest


@pytest.fixture
def dotenv_calls(monkeypatch):
    calls = []
    monkeypatch.setattr(dotenv, "load_dotenv", lambda **kwargs: calls.append(kwargs))
    return calls


def _reload_main():
    if "main" in sys.modules:
        return importlib.reload(sys.modules["main"])
    return importlib.import_module("main")


def test_dotenv_fills_gaps_without_overriding_platform_env(monkeypatch, dotenv_calls) -> None:
    monkeypatch.delenv("AUTONOMY_SKIP_DOTENV", raising=False)

    _reload_main()

    assert dotenv_calls == [{"override": False}]


def test_dotenv_skipped_when_requested(monkeypatch, dotenv_calls) -> None:
    monkeypatch.setenv("AUTONOMY_SKIP_DOTENV", "true")

    _reload_main()

    assert dotenv_calls == []


def test_missing_database_url_fails_fast(monkeypatch, dotenv_calls) -> None:
    monkeypatch.setenv("AUTONOMY_SKIP_DOTENV", "1")
    monkeypatch.delenv("DATABASE_URL", raising=False)
    main = _reload_main()

    with pytest.raises(RuntimeError, match="DATABASE_URL"):
        main.validate_runtime_env_or_raise()
