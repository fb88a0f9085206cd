import pathlib
import sys
from dataclasses import replace

import pytest
from fastapi.testclient import TestClient

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from episode_store.broadcast import InMemoryBroadcastHub
from episode_store.engine import build_engine
from episode_store.kv_backends import InMemoryKeyValueStore
from episode_store.main import create_app
from episode_store.settings import EngineSettings


class CountingStore(InMemoryKeyValueStore):
    """In-memory backend that records every key written."""

    def __init__(self) -> None:
        super().__init__()
        self.writes: list[str] = []

    async def set(self, key, value) -> None:
        self.writes.append(key)
        await super().set(key, value)

    def writes_for(self, key: str) -> int:
        return sum(1 for item in self.writes if item == key)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch):
    for name in (
        "EPS_STORE_BACKEND",
        "EPS_STORE_SQLITE_PATH",
        "EPS_BROADCAST_BACKEND",
        "EPS_MIRROR_DIR",
        "REDIS_DSN",
    ):
        monkeypatch.delenv(name, raising=False)
    yield


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(
        debounce_ms=20,
        max_commit_ms=2000,
        saved_display_ms=30,
        error_display_ms=30,
        migration_threshold_bytes=1024,
    )


@pytest.fixture
def make_engine(settings: EngineSettings):
    def _make(*, kv=None, hub: InMemoryBroadcastHub | None = None, **overrides):
        current = replace(settings, **overrides) if overrides else settings
        return build_engine(current, hub=hub, kv=kv if kv is not None else CountingStore())

    return _make


@pytest.fixture
def client(settings: EngineSettings):
    app = create_app(settings=settings)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def counting_store() -> CountingStore:
    return CountingStore()
