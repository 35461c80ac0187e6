from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import case, func
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from mongokeeper.errors import PersistenceError
from mongokeeper.models.backup import BackupRecord, BackupStatus, Cadence
from mongokeeper.services.clock import Clock

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "Interrupted: process exited before the backup settled"


class MetadataStore:
    """Durable table of backup attempts.

    Every call opens its own session, so readers (the HTTP API) and the
    single writer (the coordinator) never share a session. Datetime
    arguments may be aware; they are normalized to naive UTC.
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert(self, record: BackupRecord) -> int:
        record.timestamp = Clock.to_utc(record.timestamp)
        try:
            with Session(self._engine) as session:
                session.add(record)
                session.commit()
                session.refresh(record)
                session.expunge(record)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not insert backup record: {exc}") from exc
        return record.id

    def settle(self, record: BackupRecord) -> None:
        """Write the terminal state of a record inserted as running."""
        if not record.is_settled:
            raise ValueError("settle() needs a success or failed status")
        try:
            with Session(self._engine) as session:
                stored = session.get(BackupRecord, record.id)
                if stored is None:
                    raise PersistenceError(f"Backup record {record.id} no longer exists")
                if stored.is_settled:
                    raise PersistenceError(f"Backup record {record.id} is already settled")
                for field in (
                    "status",
                    "duration_seconds",
                    "collections_count",
                    "documents_count",
                    "indexes_count",
                    "error_message",
                    "backup_size_bytes",
                    "log_text",
                ):
                    setattr(stored, field, getattr(record, field))
                session.add(stored)
                session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not settle backup record {record.id}: {exc}") from exc

    def delete(self, record_id: int) -> bool:
        try:
            with Session(self._engine) as session:
                stored = session.get(BackupRecord, record_id)
                if stored is None:
                    return False
                session.delete(stored)
                session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not delete backup record {record_id}: {exc}") from exc
        return True

    def reconcile_interrupted(self) -> int:
        """Mark rows left running by a previous process as failed.

        Called once at startup, before any attempt of this process begins.
        """
        try:
            with Session(self._engine) as session:
                stuck = session.exec(
                    select(BackupRecord)
                    .where(BackupRecord.status == BackupStatus.RUNNING.value)
                ).all()
                for record in stuck:
                    record.status = BackupStatus.FAILED.value
                    record.error_message = INTERRUPTED_MESSAGE
                    record.backup_size_bytes = 0
                    session.add(record)
                if stuck:
                    session.commit()
                    logger.warning(
                        "Marked %d interrupted backup(s) from a previous run as failed",
                        len(stuck),
                    )
                return len(stuck)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not reconcile interrupted backups: {exc}") from exc

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, record_id: int) -> BackupRecord | None:
        with Session(self._engine) as session:
            return session.get(BackupRecord, record_id)

    def query(
        self,
        cadence: Cadence,
        status: BackupStatus | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        before: datetime | None = None,
        newest_first: bool = True,
        limit: int | None = None,
    ) -> list[BackupRecord]:
        """Records of one cadence ordered by timestamp, ties broken by id.

        ``since`` is inclusive; ``until`` and ``before`` are exclusive.
        """
        stmt = select(BackupRecord).where(BackupRecord.cadence == cadence.value)
        if status is not None:
            stmt = stmt.where(BackupRecord.status == status.value)
        if since is not None:
            stmt = stmt.where(BackupRecord.timestamp >= Clock.to_utc(since))
        if until is not None:
            stmt = stmt.where(BackupRecord.timestamp < Clock.to_utc(until))
        if before is not None:
            stmt = stmt.where(BackupRecord.timestamp < Clock.to_utc(before))
        if newest_first:
            stmt = stmt.order_by(col(BackupRecord.timestamp).desc(), col(BackupRecord.id).desc())
        else:
            stmt = stmt.order_by(col(BackupRecord.timestamp), col(BackupRecord.id))
        if limit is not None:
            stmt = stmt.limit(limit)

        with Session(self._engine) as session:
            return list(session.exec(stmt).all())

    def count_since(self, cadence: Cadence, status: BackupStatus, since: datetime) -> int:
        stmt = (
            select(func.count())
            .select_from(BackupRecord)
            .where(BackupRecord.cadence == cadence.value)
            .where(BackupRecord.status == status.value)
            .where(BackupRecord.timestamp >= Clock.to_utc(since))
        )
        with Session(self._engine) as session:
            return int(session.exec(stmt).one())

    def latest_success(self, cadence: Cadence) -> BackupRecord | None:
        records = self.query(cadence, status=BackupStatus.SUCCESS, limit=1)
        return records[0] if records else None

    def stats(self, cadence: Cadence) -> dict:
        """Aggregate counters for one cadence, as shown on the dashboard."""
        is_success = col(BackupRecord.status) == BackupStatus.SUCCESS.value
        is_failed = col(BackupRecord.status) == BackupStatus.FAILED.value
        stmt = select(
            func.count(),
            func.sum(case((is_success, 1), else_=0)),
            func.sum(case((is_failed, 1), else_=0)),
            func.avg(case((is_success, BackupRecord.duration_seconds), else_=None)),
            func.sum(case((is_success, BackupRecord.backup_size_bytes), else_=0)),
        ).where(BackupRecord.cadence == cadence.value)

        with Session(self._engine) as session:
            total, successful, failed_count, avg_duration, total_size = session.exec(stmt).one()

        return {
            "total_backups": int(total or 0),
            "successful_backups": int(successful or 0),
            "failed_backups": int(failed_count or 0),
            "average_duration_seconds": float(avg_duration or 0),
            "total_size_bytes": int(total_size or 0),
        }
