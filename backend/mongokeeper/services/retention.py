from __future__ import annotations

import logging
import shutil
from datetime import timedelta

from mongokeeper.config import AGE_UNITS, Settings
from mongokeeper.errors import PersistenceError, RetentionError
from mongokeeper.models.backup import BackupRecord, BackupStatus, Cadence
from mongokeeper.services.clock import Clock
from mongokeeper.services.store import MetadataStore

logger = logging.getLogger(__name__)


class RetentionEvaluator:
    """Decide which artifacts of a cadence have outlived their policy and remove them.

    Daily backups are limited by count within the current calendar day.
    Weekly, monthly and yearly backups are limited by age in their own unit.
    Cleanup is best-effort per record: a failed deletion is logged and the
    remaining records are still processed.
    """

    def __init__(self, settings: Settings, store: MetadataStore, clock: Clock) -> None:
        self._settings = settings
        self._store = store
        self._clock = clock

    def apply(self, cadence: Cadence) -> list[BackupRecord]:
        """Run the policy for *cadence*; return the records whose artifacts were removed."""
        if cadence is Cadence.DAILY:
            expired = self.expired_daily()
        else:
            expired = self.expired_by_age(cadence)

        removed: list[BackupRecord] = []
        for record in expired:
            try:
                if self._remove(cadence, record):
                    removed.append(record)
            except RetentionError as exc:
                logger.error("%s", exc)
        return removed

    # ------------------------------------------------------------------
    # Policies
    # ------------------------------------------------------------------

    def expired_daily(self) -> list[BackupRecord]:
        """Today's successful daily backups beyond the newest MAX_DAILY_BACKUPS."""
        keep = self._settings.max_daily_backups
        if keep == -1:
            return []

        day_start = self._clock.start_of_day(self._clock.now())
        day_end = self._clock.start_of_day(day_start + timedelta(hours=36))
        todays = self._store.query(
            Cadence.DAILY,
            status=BackupStatus.SUCCESS,
            since=day_start,
            until=day_end,
            newest_first=True,
        )
        return todays[keep:]

    def expired_by_age(self, cadence: Cadence) -> list[BackupRecord]:
        """Records of *cadence* dated strictly before today minus the max age."""
        max_age = self._settings.max_age(cadence)
        if max_age <= 0:
            return []

        threshold = self._clock.subtract(self._clock.now(), max_age, AGE_UNITS[cadence])
        cutoff = self._clock.start_of_day(threshold)
        return self._store.query(cadence, before=cutoff, newest_first=False)

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    def _remove(self, cadence: Cadence, record: BackupRecord) -> bool:
        path = self._settings.cadence_dir(cadence) / record.folder_name
        removed = False
        if path.exists():
            try:
                shutil.rmtree(path)
            except OSError as exc:
                raise RetentionError(
                    f"Failed to delete old {cadence.value} backup {record.folder_name}: {exc}"
                ) from exc
            removed = True
            logger.info("Deleted old %s backup: %s", cadence.value, record.folder_name)

        if self._settings.prune_records and record.id is not None:
            try:
                self._store.delete(record.id)
            except PersistenceError as exc:
                raise RetentionError(str(exc)) from exc
            removed = True
        return removed
