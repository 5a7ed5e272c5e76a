# tests/conftest.py
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
import sqlalchemy as sa

from services.metrics_service import MetricsService


@pytest.fixture
def anyio_backend():
    # Force AnyIO tests to run on asyncio only.
    # This avoids requiring optional dependency "trio".
    return "asyncio"


@pytest.fixture(autouse=True)
def _reset_metrics():
    MetricsService.reset()
    yield
    MetricsService.reset()


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def sqlite_engine(tmp_path):
    # File-backed so worker threads (asyncio.to_thread) see the same database.
    engine = sa.create_engine(
        f"sqlite:///{tmp_path / 'autonomy.db'}",
        connect_args={"check_same_thread": False},
        future=True,
    )
    yield engine
    engine.dispose()
