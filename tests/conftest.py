"""Shared fixtures: controllable clock, isolated database, stores and providers."""

from __future__ import annotations

import threading
from collections.abc import Callable, Generator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from cloudrelay.core.config import EngineConfig
from cloudrelay.engine.providers import MemoryProvider, ProviderRegistry
from cloudrelay.server.database import Database
from cloudrelay.server.jobs import JobSpec, JobStore
from cloudrelay.server.schedules import ScheduleStore
from cloudrelay.server.versions import VersionRecorder

# Monday
START = datetime(2026, 1, 5, 12, 0, tzinfo=UTC)


class FakeClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = START) -> None:
        self._now = start
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, seconds: float = 0, **kwargs: float) -> datetime:
        with self._lock:
            self._now += timedelta(seconds=seconds, **kwargs)
            return self._now


@pytest.fixture
def clock() -> FakeClock:
    """Clock frozen at Monday 2026-01-05 12:00 UTC."""
    return FakeClock()


@pytest.fixture
def db(tmp_path: Path) -> Generator[Database, None, None]:
    """Create a test database."""
    database = Database(tmp_path / "test.db")
    yield database
    database.close()


@pytest.fixture
def config(tmp_path: Path) -> EngineConfig:
    """Engine config with short leases and no per-user cap."""
    return EngineConfig(
        db_path=tmp_path / "test.db",
        log_path=tmp_path / "test.log",
        worker_id="worker-a",
        lease_timeout=60.0,
        heartbeat_interval=10.0,
        max_jobs_per_user=0,
        default_max_retries=3,
        provider_root=tmp_path / "providers",
    )


@pytest.fixture
def job_store(db: Database, config: EngineConfig, clock: FakeClock) -> JobStore:
    """Job store on the test database."""
    return JobStore(db, config=config, clock=clock)


@pytest.fixture
def versions(db: Database, clock: FakeClock) -> VersionRecorder:
    """Version recorder on the test database."""
    return VersionRecorder(db, clock=clock)


@pytest.fixture
def schedule_store(db: Database, clock: FakeClock) -> ScheduleStore:
    """Schedule store on the test database."""
    return ScheduleStore(db, clock=clock)


@pytest.fixture
def drive(clock: FakeClock) -> MemoryProvider:
    """Source-side in-memory provider."""
    return MemoryProvider("drive", clock=clock)


@pytest.fixture
def box(clock: FakeClock) -> MemoryProvider:
    """Destination-side in-memory provider."""
    return MemoryProvider("box", clock=clock)


@pytest.fixture
def registry(drive: MemoryProvider, box: MemoryProvider) -> ProviderRegistry:
    """Registry serving the two memory providers to every user."""
    reg = ProviderRegistry()
    reg.register_shared(drive)
    reg.register_shared(box)
    return reg


@pytest.fixture
def make_spec() -> Callable[..., JobSpec]:
    """Build a JobSpec for alice copying drive -> box, with overrides."""

    def _make(**overrides: object) -> JobSpec:
        fields: dict[str, object] = {
            "user_id": "alice",
            "source_provider": "drive",
            "dest_provider": "box",
            "source_item_id": "file-1",
            "dest_folder_id": "root",
        }
        fields.update(overrides)
        return JobSpec(**fields)  # type: ignore[arg-type]

    return _make
