from __future__ import annotations

import logging
from collections.abc import Generator

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine

from mongokeeper.config import get_settings

logger = logging.getLogger(__name__)


@event.listens_for(Engine, "connect")
def _set_sqlite_pragmas(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


_engine: Engine | None = None


def get_engine() -> Engine:
    """Process-wide engine for the metadata database, created on first use."""
    global _engine
    if _engine is None:
        _engine = create_engine(
            get_settings().resolved_db_url,
            echo=False,
            connect_args={"check_same_thread": False},
        )
    return _engine


def create_db_and_tables(eng: Engine | None = None) -> None:
    eng = eng or get_engine()
    SQLModel.metadata.create_all(eng)
    _run_migrations(eng)


def _run_migrations(eng) -> None:
    """Lightweight forward-only migrations for schema changes."""
    from sqlalchemy import inspect, text

    from mongokeeper.models.backup import BackupRecord

    insp = inspect(eng)
    columns = [c["name"] for c in insp.get_columns("backups")]

    # Databases written by the Node.js service: "type" and "backup_logs"
    # columns, timestamps stored as local ISO strings with a UTC offset
    if "type" in columns and "cadence" not in columns:
        with eng.begin() as conn:
            conn.execute(text("ALTER TABLE backups RENAME COLUMN type TO cadence"))
            if "backup_logs" in columns:
                conn.execute(text("ALTER TABLE backups RENAME COLUMN backup_logs TO log_text"))
            else:
                conn.execute(text("ALTER TABLE backups ADD COLUMN log_text TEXT DEFAULT ''"))
            conn.execute(text(
                "UPDATE backups SET timestamp = datetime(timestamp) || '.000000' "
                "WHERE timestamp LIKE '%T%'"
            ))
            for col_name in (
                "collections_count", "documents_count", "indexes_count", "backup_size_bytes",
            ):
                conn.execute(text(f"UPDATE backups SET {col_name} = 0 WHERE {col_name} IS NULL"))
            conn.execute(text("UPDATE backups SET log_text = '' WHERE log_text IS NULL"))
            # create_all() skips indexes of a table that already existed
            for index in BackupRecord.__table__.indexes:
                index.create(conn, checkfirst=True)
        logger.info("Migrated legacy backup metadata table")


def get_session() -> Generator[Session, None, None]:
    with Session(get_engine()) as session:
        yield session
