import asyncio
import sys
from pathlib import Path

import pytest


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture(autouse=True)
def _test_env(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("ENV", "development")
    monkeypatch.setenv("SESSION_STORE_BACKEND", "memory")


class FakeConnection:
    def __init__(self, connection_id: str):
        self.connection_id = connection_id
        self.sent: list[dict] = []
        self.closed = False

    async def send(self, payload: dict) -> None:
        await asyncio.sleep(0)
        self.sent.append(payload)

    async def close(self) -> None:
        self.closed = True

    def of_type(self, event_type: str) -> list[dict]:
        return [item for item in self.sent if item.get("type") == event_type]


class FailingSessionStore:
    """Every operation raises, as if the backing store were unreachable."""

    def __init__(self):
        self.calls: list[str] = []

    def __getattr__(self, name: str):
        async def _fail(*args, **kwargs):
            self.calls.append(name)
            raise ConnectionError(f"store unavailable: {name}")

        return _fail


@pytest.fixture
def fake_connection_factory():
    return FakeConnection


@pytest.fixture
def failing_store() -> FailingSessionStore:
    return FailingSessionStore()
