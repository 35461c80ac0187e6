"""Read-only dashboard API over backup metadata and artifacts."""
from __future__ import annotations

import asyncio
import logging
import tarfile
import tempfile
from collections.abc import Iterator
from pathlib import Path
from typing import IO

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import StreamingResponse

from mongokeeper.config import Settings
from mongokeeper.dependencies import get_app_settings, get_clock, get_coordinator, get_store
from mongokeeper.models.backup import (
    BackupLogsResponse,
    BackupRecordRead,
    BackupStatsResponse,
    BackupStatus,
    Cadence,
    RunStateResponse,
)
from mongokeeper.services.clock import Clock
from mongokeeper.services.coordinator import BackupCoordinator
from mongokeeper.services.store import MetadataStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["backups"])

MAX_HISTORY_LIMIT = 30
_CHUNK_SIZE = 1024 * 1024


@router.get("/backups", response_model=list[BackupRecordRead])
@router.get("/backups/{cadence}", response_model=list[BackupRecordRead])
async def list_backups(
    cadence: Cadence = Cadence.DAILY,
    limit: int = Query(default=5, ge=1),
    store: MetadataStore = Depends(get_store),
    clock: Clock = Depends(get_clock),
) -> list[BackupRecordRead]:
    """Newest backups of one cadence."""
    records = store.query(cadence, limit=min(limit, MAX_HISTORY_LIMIT))
    return [BackupRecordRead.from_record(r, clock.tz) for r in records]


@router.get("/stats", response_model=BackupStatsResponse)
@router.get("/stats/{cadence}", response_model=BackupStatsResponse)
async def backup_stats(
    cadence: Cadence = Cadence.DAILY,
    store: MetadataStore = Depends(get_store),
    settings: Settings = Depends(get_app_settings),
) -> BackupStatsResponse:
    stats = store.stats(cadence)
    max_backups, max_type = settings.retention_limit(cadence)
    return BackupStatsResponse(
        total_successful_backups=stats["successful_backups"],
        total_failed_backups=stats["failed_backups"],
        max_backups=max_backups,
        max_type=max_type,
        total_available_successful_backups=stats["successful_backups"],
        average_duration_seconds=round(stats["average_duration_seconds"]),
        total_size_mb=round(stats["total_size_bytes"] / 1024 / 1024),
        database_name=settings.database_name,
    )


@router.get("/current", response_model=RunStateResponse)
async def current_backup(
    coordinator: BackupCoordinator = Depends(get_coordinator),
) -> RunStateResponse:
    return coordinator.run_state()


@router.get("/logs/{backup_id}", response_model=BackupLogsResponse)
async def backup_logs(
    backup_id: int,
    store: MetadataStore = Depends(get_store),
    clock: Clock = Depends(get_clock),
) -> BackupLogsResponse:
    """The log lines captured while one backup ran."""
    record = store.get(backup_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Backup not found")
    logs = record.log_text.split("\n") if record.log_text else ["No logs available for this backup"]
    return BackupLogsResponse(backup=BackupRecordRead.from_record(record, clock.tz), logs=logs)


def _build_archive(source: Path, arcname: str) -> IO[bytes]:
    """Pack *source* into a gzip tarball held in an anonymous temp file."""
    archive = tempfile.TemporaryFile()
    try:
        with tarfile.open(fileobj=archive, mode="w:gz") as tar:
            tar.add(str(source), arcname=arcname)
    except Exception:
        archive.close()
        raise
    archive.seek(0)
    return archive


def _iter_file(handle: IO[bytes]) -> Iterator[bytes]:
    try:
        while chunk := handle.read(_CHUNK_SIZE):
            yield chunk
    finally:
        handle.close()


@router.get("/download/{backup_id}")
async def download_backup(
    backup_id: int,
    store: MetadataStore = Depends(get_store),
    settings: Settings = Depends(get_app_settings),
) -> StreamingResponse:
    """Stream one successful backup as a .tar.gz archive."""
    record = store.get(backup_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Backup not found")
    if record.status != BackupStatus.SUCCESS.value:
        raise HTTPException(status_code=400, detail="Cannot download failed backup")

    backup_dir = settings.cadence_dir(Cadence(record.cadence)) / record.folder_name
    if not backup_dir.is_dir():
        raise HTTPException(status_code=404, detail="Backup files not found on disk")

    try:
        archive = await asyncio.to_thread(_build_archive, backup_dir, record.folder_name)
    except (OSError, tarfile.TarError):
        logger.exception("Archive error for backup %s", record.folder_name)
        raise HTTPException(status_code=500, detail="Failed to create archive")

    return StreamingResponse(
        _iter_file(archive),
        media_type="application/gzip",
        headers={
            "Content-Disposition": f'attachment; filename="{record.folder_name}.tar.gz"',
        },
    )
