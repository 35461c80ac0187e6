from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

import mongokeeper.models  # noqa: F401  registers SQLModel tables

from mongokeeper.config import get_settings
from mongokeeper.db import create_db_and_tables, get_engine
from mongokeeper.errors import ConfigurationError
from mongokeeper.logging_config import configure_logging
from mongokeeper.models.backup import Cadence
from mongokeeper.routers import backups, health
from mongokeeper.services.clock import Clock
from mongokeeper.services.coordinator import BackupCoordinator
from mongokeeper.services.dump import MongoDumpRunner
from mongokeeper.services.retention import RetentionEvaluator
from mongokeeper.services.scheduler import CadenceScheduler
from mongokeeper.services.store import MetadataStore

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings)

    try:
        for cadence in Cadence:
            settings.cadence_dir(cadence).mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise ConfigurationError(
            f"Cannot create backup directories under {settings.backup_path}: {exc}"
        ) from exc

    engine = get_engine()
    create_db_and_tables(engine)

    clock = Clock(settings.timezone)
    store = MetadataStore(engine)
    runner = MongoDumpRunner(settings)
    retention = RetentionEvaluator(settings, store, clock)
    coordinator = BackupCoordinator(settings, store, retention, runner, clock)

    app.state.settings = settings
    app.state.clock = clock
    app.state.store = store
    app.state.coordinator = coordinator
    app.state.scheduler = None

    if settings.scheduler_enabled:
        # Unreachable database is fatal: raising here aborts startup
        await runner.probe()
        scheduler = CadenceScheduler(settings, store, coordinator, clock)
        scheduler.start()
        app.state.scheduler = scheduler
    else:
        logger.info("Scheduler disabled, serving backup metadata only")

    yield

    # Shutdown: in-flight attempts are abandoned, not settled
    if app.state.scheduler is not None:
        logger.info("Shutting down backup scheduler")
        await app.state.scheduler.stop()


app = FastAPI(
    title="mongokeeper",
    description="Scheduled MongoDB backups with per-cadence retention",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(health.router)
app.include_router(backups.router)
