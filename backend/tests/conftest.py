from __future__ import annotations

import asyncio
import os
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Set test environment BEFORE importing mongokeeper modules.
# get_settings() is cached on first use, so the env must be in place first.
_test_tmp = tempfile.mkdtemp(prefix="mongokeeper-test-")
os.environ.setdefault("MONGO_CONNECTION_STRING", "mongodb://localhost:27017/shop")
os.environ.setdefault("BACKUP_PATH", os.path.join(_test_tmp, "backups"))
os.environ.setdefault("DB_URL", "sqlite://")
os.environ.setdefault("LOG_FILE", "-")
os.environ.setdefault("SCHEDULER_ENABLED", "0")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine

from mongokeeper.config import Settings
from mongokeeper.db import get_session
from mongokeeper.main import app as fastapi_app
from mongokeeper.models.backup import BackupRecord, BackupStatus, Cadence
from mongokeeper.services.clock import Clock
from mongokeeper.services.coordinator import BackupCoordinator
from mongokeeper.services.dump import DumpResult, MongoDumpRunner
from mongokeeper.services.retention import RetentionEvaluator
from mongokeeper.services.store import MetadataStore

MONGO_URI = "mongodb://localhost:27017/shop"


# ── Test doubles ──────────────────────────────────────────────────────


class FrozenClock(Clock):
    """Clock whose "now" only moves when a test moves it."""

    def __init__(self, tz_name: str = "UTC", now: datetime | None = None) -> None:
        super().__init__(tz_name)
        self._now = now or datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.localize(self._now)

    def set(self, when: datetime) -> None:
        self._now = when

    def advance(self, **kwargs) -> None:
        self._now = self._now + timedelta(**kwargs)


class FakeDumpRunner(MongoDumpRunner):
    """Writes a small dump tree instead of launching mongodump.

    ``fail_with`` makes run() raise; ``gate`` holds run() open until set,
    which lets a test observe an attempt while it is in progress.
    """

    def __init__(self, settings: Settings) -> None:
        super().__init__(settings)
        self.fail_with: Exception | None = None
        self.gate: asyncio.Event | None = None
        self.started = asyncio.Event()
        self.calls: list[Path] = []
        self.active = 0
        self.max_active = 0

    async def run(self, output_dir: Path) -> DumpResult:
        self.calls.append(output_dir)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        self.started.set()
        try:
            db_dir = output_dir / "shop"
            db_dir.mkdir(parents=True, exist_ok=True)
            (db_dir / "orders.bson").write_bytes(b"\x00" * 2048)
            (db_dir / "orders.metadata.json").write_text(
                '{"indexes": [{"name": "_id_"}, {"name": "customer_1"}]}'
            )
            (db_dir / "users.bson").write_bytes(b"\x00" * 512)
            (db_dir / "users.metadata.json").write_text('{"indexes": [{"name": "_id_"}]}')

            if self.gate is not None:
                await self.gate.wait()
            if self.fail_with is not None:
                raise self.fail_with
            return DumpResult(
                returncode=0,
                output=(
                    "writing shop.orders to orders.bson\n"
                    "done dumping shop.orders (40 documents)\n"
                    "done dumping shop.users (2 documents)\n"
                ),
            )
        finally:
            self.active -= 1


def _settings(tmp_path: Path, **overrides) -> Settings:
    values = {
        "mongo_connection_string": MONGO_URI,
        "backup_path": tmp_path / "backups",
        "db_url": "sqlite://",
        "log_file": "-",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


# ── Database fixtures ─────────────────────────────────────────────────


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite shared by every connection, fresh tables per test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(name="session")
def session_fixture(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture(name="store")
def store_fixture(engine) -> MetadataStore:
    return MetadataStore(engine)


@pytest.fixture(name="add_record")
def add_record_fixture(store):
    """Insert a settled record, as a finished attempt would leave it."""

    def _add(
        cadence: Cadence,
        timestamp: datetime,
        status: BackupStatus = BackupStatus.SUCCESS,
        folder_name: str | None = None,
        **fields,
    ) -> BackupRecord:
        record = BackupRecord(
            timestamp=timestamp,
            cadence=cadence.value,
            folder_name=folder_name or Clock().folder_name(timestamp, "shop"),
            database_name="shop",
            status=status.value,
            **fields,
        )
        store.insert(record)
        return record

    return _add


# ── Engine service fixtures ───────────────────────────────────────────


@pytest.fixture(name="make_settings")
def make_settings_fixture(tmp_path):
    """Build Settings rooted in the test's tmp_path, ignoring any .env file."""

    def _make(**overrides) -> Settings:
        return _settings(tmp_path, **overrides)

    return _make


@pytest.fixture(name="settings")
def settings_fixture(make_settings) -> Settings:
    settings = make_settings()
    for cadence in Cadence:
        settings.cadence_dir(cadence).mkdir(parents=True, exist_ok=True)
    return settings


@pytest.fixture(name="make_clock")
def make_clock_fixture():
    return FrozenClock


@pytest.fixture(name="clock")
def clock_fixture() -> FrozenClock:
    return FrozenClock()


@pytest.fixture(name="make_runner")
def make_runner_fixture():
    return FakeDumpRunner


@pytest.fixture(name="runner")
def runner_fixture(settings) -> FakeDumpRunner:
    return FakeDumpRunner(settings)


@pytest.fixture(name="retention")
def retention_fixture(settings, store, clock) -> RetentionEvaluator:
    return RetentionEvaluator(settings, store, clock)


@pytest.fixture(name="coordinator")
def coordinator_fixture(settings, store, retention, runner, clock) -> BackupCoordinator:
    return BackupCoordinator(settings, store, retention, runner, clock)


# ── HTTP client fixtures ──────────────────────────────────────────────


@pytest.fixture(name="client")
def client_fixture(session, settings, store, clock, coordinator):
    """TestClient wired to the per-test database and services."""

    def _get_session_override():
        yield session

    fastapi_app.dependency_overrides[get_session] = _get_session_override
    with TestClient(fastapi_app) as client:
        fastapi_app.state.settings = settings
        fastapi_app.state.store = store
        fastapi_app.state.clock = clock
        fastapi_app.state.coordinator = coordinator
        fastapi_app.state.scheduler = None
        yield client
    fastapi_app.dependency_overrides.clear()
