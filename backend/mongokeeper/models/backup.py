from __future__ import annotations

from datetime import datetime, timezone, tzinfo
from enum import Enum

from pydantic import BaseModel
from sqlmodel import Field, SQLModel


class Cadence(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


# Coarsest first: a tick that qualifies for several cadences takes the first
CADENCE_PRECEDENCE: tuple[Cadence, ...] = (
    Cadence.YEARLY,
    Cadence.MONTHLY,
    Cadence.WEEKLY,
    Cadence.DAILY,
)


class BackupStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class BackupRecord(SQLModel, table=True):
    """One row per backup attempt; settled exactly once."""
    __tablename__ = "backups"

    id: int | None = Field(default=None, primary_key=True)
    # Naive UTC; rendered in the configured timezone by the read schemas
    timestamp: datetime = Field(index=True)
    cadence: str = Field(index=True)
    folder_name: str
    database_name: str
    status: str = Field(default=BackupStatus.RUNNING.value, index=True)
    duration_seconds: int | None = Field(default=None)
    collections_count: int = Field(default=0)
    documents_count: int = Field(default=0)
    indexes_count: int = Field(default=0)
    error_message: str | None = Field(default=None)
    backup_size_bytes: int = Field(default=0)
    log_text: str = Field(default="")
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_settled(self) -> bool:
        return self.status != BackupStatus.RUNNING.value


# --- Pydantic response schemas ---

class BackupRecordRead(BaseModel):
    id: int
    timestamp: datetime
    cadence: str
    folder_name: str
    database_name: str
    status: str
    duration_seconds: int | None
    collections_count: int
    documents_count: int
    indexes_count: int
    error_message: str | None
    backup_size_bytes: int

    model_config = {"from_attributes": True}

    @classmethod
    def from_record(cls, record: BackupRecord, tz: tzinfo) -> BackupRecordRead:
        """Build the read schema with the timestamp shown in *tz*."""
        read = cls.model_validate(record)
        stamp = read.timestamp
        if stamp.tzinfo is None:
            stamp = stamp.replace(tzinfo=timezone.utc)
        read.timestamp = stamp.astimezone(tz)
        return read


class CurrentBackup(BaseModel):
    cadence: Cadence
    folder_name: str
    started_at: datetime
    status: str = BackupStatus.RUNNING.value


class RunStateResponse(BaseModel):
    """Whether a backup is executing right now, for /api/current."""
    is_running: bool
    current_backup: CurrentBackup | None


class BackupStatsResponse(BaseModel):
    total_successful_backups: int
    total_failed_backups: int
    max_backups: int
    max_type: str               # "backups" for daily, otherwise the age unit
    total_available_successful_backups: int
    average_duration_seconds: int
    total_size_mb: int
    database_name: str


class BackupLogsResponse(BaseModel):
    backup: BackupRecordRead
    logs: list[str]
