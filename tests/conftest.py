"""Shared fixtures: per-test SQLite file, event store, controllable clock."""

from pathlib import Path

import pytest

from outbox.events import EventStore
from outbox.settings import reload_settings


class FakeClock:
    """Callable clock for time travel in worker/reaper tests."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "outbox.db"


@pytest.fixture
async def store(db_path: Path) -> EventStore:
    s = EventStore(db_path)
    await s.open()
    yield s
    await s.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(autouse=True)
def _fresh_settings(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("OUTBOX_DB_PATH", raising=False)
    reload_settings()
    yield
    reload_settings()
