"""Shared test fixtures for trak tests."""

import shutil
import tempfile
from datetime import datetime, timezone
from pathlib import Path

import pytest

from trak.db import Store
from trak.gateway import Gateway, SpawnRequest, SpawnResponse
from trak.locks import LockManager


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep the developer's environment out of discovery."""
    for name in ("TRAK_DB", "TRAK_GATEWAY_URL", "TRAK_GATEWAY_TOKEN", "TRAK_AGENT"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    tmp = tempfile.mkdtemp()
    yield Path(tmp)
    shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def trak_dir(temp_dir):
    """A .trak directory inside the temporary working copy."""
    path = temp_dir / ".trak"
    path.mkdir(parents=True, exist_ok=True)
    return path


@pytest.fixture
def store(trak_dir):
    """Initialized store writing its portable log on every change."""
    handle = Store(trak_dir / "trak.db")
    handle.migrate_schema()
    return handle


@pytest.fixture
def quiet_store(trak_dir):
    """Initialized store that does not export after writes."""
    handle = Store(trak_dir / "trak.db", export_on_write=False)
    handle.migrate_schema()
    return handle


class FakeClock:
    """Settable clock for lock expiry tests."""

    def __init__(self, now: datetime | None = None):
        self.now = now or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


class FakeLiveness:
    """Liveness check where every PID is alive unless marked dead."""

    def __init__(self):
        self.dead: set[int] = set()

    def __call__(self, pid: int) -> bool:
        return pid not in self.dead


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def liveness():
    return FakeLiveness()


@pytest.fixture
def lock_manager(trak_dir, clock, liveness):
    """Lock manager with a fake clock and liveness check."""
    return LockManager(trak_dir / "locks", timeout_minutes=30, liveness=liveness, clock=clock)


class FakeGateway(Gateway):
    """In-memory gateway recording every call."""

    def __init__(self, reachable: bool = True, spawn_ok: bool = True, error: str = "spawn rejected"):
        self.reachable = reachable
        self.spawn_ok = spawn_ok
        self.error = error
        self.ping_calls = 0
        self.spawn_calls: list[SpawnRequest] = []
        self.active_labels: set[str] = set()

    def ping(self) -> bool:
        self.ping_calls += 1
        return self.reachable

    def spawn(self, request: SpawnRequest) -> SpawnResponse:
        self.spawn_calls.append(request)
        if not self.spawn_ok:
            return SpawnResponse(ok=False, error=self.error)
        return SpawnResponse(ok=True, session_key=f"session-{len(self.spawn_calls)}", run_id="run-1")

    def is_session_active(self, label_prefix: str) -> bool:
        return any(label.startswith(label_prefix) for label in self.active_labels)

    @property
    def spawned_labels(self) -> list[str]:
        return [request.label for request in self.spawn_calls]


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def events():
    """Collects structured event lines."""
    return []


@pytest.fixture
def make_gateway():
    """Factory for gateways that are down or reject spawns."""
    return FakeGateway
