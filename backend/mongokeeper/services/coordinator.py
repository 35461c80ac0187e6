from __future__ import annotations

import asyncio
import logging
import shutil
import threading
import time
from datetime import datetime
from pathlib import Path

from mongokeeper.config import Settings
from mongokeeper.errors import ExecutionError, PersistenceError
from mongokeeper.logging_config import AttemptLog
from mongokeeper.models.backup import (
    BackupRecord,
    BackupStatus,
    Cadence,
    CurrentBackup,
    RunStateResponse,
)
from mongokeeper.services.clock import Clock
from mongokeeper.services.dump import MongoDumpRunner
from mongokeeper.services.retention import RetentionEvaluator
from mongokeeper.services.store import MetadataStore

logger = logging.getLogger(__name__)


class RunState:
    """Process-wide "is a backup running" flag.

    The lock covers both the check and the transition, so two triggers
    firing at the same moment can never both start an attempt.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._running = False
        self._current: CurrentBackup | None = None

    def try_start(self, current: CurrentBackup) -> bool:
        with self._lock:
            if self._running:
                return False
            self._running = True
            self._current = current
            return True

    def finish(self) -> None:
        with self._lock:
            self._running = False
            self._current = None

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._running

    def snapshot(self) -> RunStateResponse:
        with self._lock:
            current = self._current.model_copy() if self._current is not None else None
            return RunStateResponse(is_running=self._running, current_backup=current)


class BackupCoordinator:
    """Run one backup attempt at a time and record how it went."""

    def __init__(
        self,
        settings: Settings,
        store: MetadataStore,
        retention: RetentionEvaluator,
        runner: MongoDumpRunner,
        clock: Clock,
    ) -> None:
        self._settings = settings
        self._store = store
        self._retention = retention
        self._runner = runner
        self._clock = clock
        self._state = RunState()
        self._database_name = settings.database_name

    @property
    def is_running(self) -> bool:
        return self._state.is_running

    def run_state(self) -> RunStateResponse:
        return self._state.snapshot()

    async def execute(self, cadence: Cadence) -> BackupRecord | None:
        """Perform one backup of *cadence*.

        Returns the settled record, or None when another attempt already
        holds the run-lock (the trigger is dropped, not queued).
        """
        started_at = self._clock.now()
        folder_name = self._clock.folder_name(started_at, self._database_name)
        current = CurrentBackup(cadence=cadence, folder_name=folder_name, started_at=started_at)
        if not self._state.try_start(current):
            logger.warning("Backup already in progress, skipping %s backup", cadence.value)
            return None

        try:
            return await self._attempt(cadence, started_at, folder_name)
        finally:
            self._state.finish()

    async def _attempt(self, cadence: Cadence, started_at: datetime, folder_name: str) -> BackupRecord:
        log = AttemptLog(logger)
        start = time.monotonic()
        backup_dir = self._settings.cadence_dir(cadence) / folder_name

        record = BackupRecord(
            timestamp=started_at,
            cadence=cadence.value,
            folder_name=folder_name,
            database_name=self._database_name,
            status=BackupStatus.RUNNING.value,
        )
        try:
            self._store.insert(record)
        except PersistenceError as exc:
            logger.error("Could not record start of %s backup: %s", cadence.value, exc)
            record.id = None

        log.info("Starting %s MongoDB backup...", cadence.value)
        try:
            backup_dir.mkdir(parents=True, exist_ok=True)
            log.info("Created backup directory: %s", backup_dir)

            log.info("Executing %s backup command", cadence.value)
            result = await self._runner.run(backup_dir)
            if result.output.strip():
                log.info("Backup output: %s", result.output.strip())

            stats = await asyncio.to_thread(self._runner.parse_stats, result.output, backup_dir)
            size = await asyncio.to_thread(self._runner.directory_size, backup_dir)
            duration = round(time.monotonic() - start)
            log.info("Backed up %d collections", stats.collections)
            log.info(
                "%s backup completed successfully in %d seconds. Collections: %d, Size: %.2fMB",
                cadence.value, duration, stats.collections, size / 1024 / 1024,
            )

            record.status = BackupStatus.SUCCESS.value
            record.duration_seconds = duration
            record.collections_count = max(0, stats.collections)
            record.documents_count = max(0, stats.documents)
            record.indexes_count = max(0, stats.indexes)
            record.backup_size_bytes = size
            record.error_message = None

        except Exception as exc:
            duration = round(time.monotonic() - start)
            if not isinstance(exc, (ExecutionError, OSError)):
                logger.exception("Unexpected error during %s backup", cadence.value)
            log.error("%s backup failed after %d seconds: %s", cadence.value, duration, exc)
            self._discard_partial(backup_dir, log)

            record.status = BackupStatus.FAILED.value
            record.duration_seconds = duration
            record.collections_count = 0
            record.documents_count = 0
            record.indexes_count = 0
            record.backup_size_bytes = 0
            record.error_message = str(exc) or exc.__class__.__name__

        record.log_text = log.text()
        persisted = self._persist(record)

        if record.status == BackupStatus.SUCCESS.value:
            if not persisted:
                logger.warning("Skipping retention for %s: result was not recorded", folder_name)
            else:
                try:
                    self._retention.apply(cadence)
                except Exception:
                    logger.exception("Error during %s retention cleanup", cadence.value)
        return record

    def _persist(self, record: BackupRecord) -> bool:
        """Write the terminal record; a store failure is logged, never raised."""
        try:
            if record.id is None:
                self._store.insert(record)
            else:
                self._store.settle(record)
        except PersistenceError as exc:
            logger.error("Could not save metadata for %s: %s", record.folder_name, exc)
            return False
        return True

    @staticmethod
    def _discard_partial(backup_dir: Path, log: AttemptLog) -> None:
        if not backup_dir.exists():
            return
        try:
            shutil.rmtree(backup_dir)
            log.info("Removed incomplete backup directory: %s", backup_dir)
        except OSError as exc:
            log.warning("Could not remove incomplete backup directory %s: %s", backup_dir, exc)
