"""Cadence scheduling: when is a backup due, and which cadence does it count as.

Every enabled cadence has its own timer task. Timers only announce that an
instant is due by putting a Tick on a queue; a single consumer labels the
instant with ``classify_instant`` and hands the attempt to the coordinator,
whose run-lock decides whether it actually runs.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError

from mongokeeper.config import Settings
from mongokeeper.errors import PersistenceError
from mongokeeper.models.backup import CADENCE_PRECEDENCE, BackupStatus, Cadence
from mongokeeper.services.clock import Clock
from mongokeeper.services.coordinator import BackupCoordinator
from mongokeeper.services.store import MetadataStore

logger = logging.getLogger(__name__)

BACKFILL_ORDER: tuple[Cadence, ...] = (Cadence.WEEKLY, Cadence.MONTHLY, Cadence.YEARLY)

_PERIOD_NAMES = {
    Cadence.WEEKLY: "week",
    Cadence.MONTHLY: "month",
    Cadence.YEARLY: "year",
}

# Instants already dispatched; several timers can announce the same minute
_RECENT_TICKS = 32


@dataclass(frozen=True)
class Tick:
    cadence: Cadence
    instant: datetime


def _coarsest(a: Cadence, b: Cadence) -> Cadence:
    return a if CADENCE_PRECEDENCE.index(a) <= CADENCE_PRECEDENCE.index(b) else b


class CadenceScheduler:
    def __init__(
        self,
        settings: Settings,
        store: MetadataStore,
        coordinator: BackupCoordinator,
        clock: Clock,
    ) -> None:
        self._settings = settings
        self._store = store
        self._coordinator = coordinator
        self._clock = clock
        self._queue: asyncio.Queue[Tick] = asyncio.Queue()
        self._recent: deque[datetime] = deque(maxlen=_RECENT_TICKS)
        self._tasks: list[asyncio.Task] = []
        self._dispatched: set[asyncio.Task] = set()
        self._retry_task: asyncio.Task | None = None
        self._next_fire: dict[Cadence, datetime] = {}
        self.started = False

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def enabled_cadences(self) -> list[Cadence]:
        enabled = [Cadence.DAILY]
        enabled.extend(c for c in BACKFILL_ORDER if self._settings.backup_count(c) > 0)
        return enabled

    def classify_instant(self, now: datetime) -> Cadence:
        """Label a tick with the single cadence it counts as.

        Yearly beats monthly beats weekly; anything else is a plain daily.
        """
        local = self._clock.localize(now)
        at_midnight = local.hour == 0 and local.minute == 0

        if self._settings.number_of_yearly_backups > 0 and at_midnight and local.timetuple().tm_yday == 1:
            return Cadence.YEARLY
        if self._settings.number_of_monthly_backups > 0 and at_midnight and local.day == 1:
            return Cadence.MONTHLY
        if self._settings.number_of_weekly_backups > 0 and self._clock.is_weekly_slot(
            local, self._settings.weekly_slot_hours
        ):
            return Cadence.WEEKLY
        return Cadence.DAILY

    def next_runs(self) -> dict[str, str]:
        return {c.value: fire.isoformat() for c, fire in self._next_fire.items()}

    # ------------------------------------------------------------------
    # Backfill
    # ------------------------------------------------------------------

    async def check_and_backfill_missing(self, now: datetime | None = None) -> list[Cadence]:
        """Run any weekly/monthly/yearly backup missing from the current period.

        When a backup is already running the check is retried later rather
        than dropped. Returns the cadences that were executed.
        """
        if self._coordinator.is_running:
            logger.info("Backup in progress, will check for missing backups later...")
            self._schedule_backfill_retry()
            return []

        now = now or self._clock.now()
        executed: list[Cadence] = []
        for cadence in BACKFILL_ORDER:
            if self._settings.backup_count(cadence) <= 0:
                continue

            period_start = self._clock.period_start(cadence, now)
            try:
                existing = self._store.count_since(cadence, BackupStatus.SUCCESS, period_start)
            except SQLAlchemyError:
                logger.exception("Could not look up %s backups", cadence.value)
                continue
            if existing > 0:
                continue

            logger.info(
                "No %s backup found for this %s, creating one now...",
                cadence.value, _PERIOD_NAMES[cadence],
            )
            record = await self._coordinator.execute(cadence)
            if record is None:
                # Another trigger took the run-lock first
                self._schedule_backfill_retry()
                break
            executed.append(cadence)
        return executed

    def _schedule_backfill_retry(self) -> None:
        pending = self._retry_task
        if pending is not None and not pending.done() and pending is not asyncio.current_task():
            return

        async def _retry() -> None:
            await asyncio.sleep(self._settings.backfill_retry_seconds)
            await self.check_and_backfill_missing()

        self._retry_task = asyncio.create_task(_retry(), name="backfill-retry")
        self._retry_task.add_done_callback(self._log_task_failure)

    # ------------------------------------------------------------------
    # Timers and dispatch
    # ------------------------------------------------------------------

    async def _timer(self, cadence: Cadence) -> None:
        last_fire: datetime | None = None
        while True:
            reference = self._clock.now()
            if last_fire is not None and reference < last_fire:
                reference = last_fire
            fire = self._clock.next_fire(cadence, reference, self._settings)
            self._next_fire[cadence] = fire
            await asyncio.sleep(self._clock.seconds_until(fire))
            last_fire = fire
            await self._queue.put(Tick(cadence=cadence, instant=fire))

    async def _consume(self) -> None:
        while True:
            tick = await self._queue.get()
            try:
                self.handle_tick(tick)
            except Exception:
                logger.exception("Error handling %s tick", tick.cadence.value)
            finally:
                self._queue.task_done()

    def handle_tick(self, tick: Tick) -> asyncio.Task | None:
        """Label a due instant and start its attempt; duplicate instants are ignored."""
        instant = self._clock.localize(tick.instant).replace(second=0, microsecond=0)
        key = self._clock.to_utc(instant)
        if key in self._recent:
            logger.debug("Instant %s already handled, ignoring %s tick", instant, tick.cadence.value)
            return None
        self._recent.append(key)

        cadence = _coarsest(self.classify_instant(instant), tick.cadence)
        return self.dispatch(cadence)

    def dispatch(self, cadence: Cadence) -> asyncio.Task:
        """Start an attempt without waiting for it to finish."""
        task = asyncio.create_task(self._coordinator.execute(cadence), name=f"backup-{cadence.value}")
        self._dispatched.add(task)
        task.add_done_callback(self._on_attempt_done)
        return task

    def _on_attempt_done(self, task: asyncio.Task) -> None:
        self._dispatched.discard(task)
        self._log_task_failure(task)

    @staticmethod
    def _log_task_failure(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Scheduler task %s failed: %s", task.get_name(), exc, exc_info=exc)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Reconcile leftovers, then backfill, arm timers and run the first daily backup."""
        logger.info("Starting MongoDB Backup Service")
        logger.info("Connection: %s", self._settings.redacted_connection_string)
        logger.info("Daily Interval: %d minutes", self._settings.daily_backup_interval_minutes)
        logger.info("Backup Path: %s", self._settings.backup_path)

        try:
            self._store.reconcile_interrupted()
        except PersistenceError as exc:
            logger.error("%s", exc)

        startup = asyncio.create_task(self._startup(), name="scheduler-startup")
        startup.add_done_callback(self._log_task_failure)
        self._tasks.append(startup)

    async def _startup(self) -> None:
        await asyncio.sleep(self._settings.backfill_delay_seconds)
        logger.info("Checking for missing backups...")
        await self.check_and_backfill_missing()

        self._arm()

        if self._settings.run_initial_backup:
            logger.info("Performing initial daily backup...")
            self.dispatch(Cadence.DAILY)
        logger.info("Backup scheduler started successfully")

    def _arm(self) -> None:
        self._tasks.append(asyncio.create_task(self._consume(), name="scheduler-consumer"))
        for cadence in self.enabled_cadences():
            if cadence is Cadence.DAILY:
                logger.info(
                    "Scheduling daily backups every %d minutes",
                    self._settings.daily_backup_interval_minutes,
                )
            elif cadence is Cadence.WEEKLY:
                logger.info(
                    "Scheduling %d weekly backups, one every %d hours",
                    self._settings.number_of_weekly_backups,
                    self._settings.weekly_slot_hours,
                )
            elif cadence is Cadence.MONTHLY:
                logger.info("Scheduling monthly backups on 1st of each month at midnight")
            else:
                logger.info("Scheduling yearly backups on January 1st at midnight")
            self._tasks.append(asyncio.create_task(self._timer(cadence), name=f"timer-{cadence.value}"))
        self.started = True

    async def stop(self) -> None:
        """Cancel timers, the consumer, pending retries and in-flight attempts.

        An attempt cancelled here leaves its running row behind; it is
        marked failed on the next start.
        """
        tasks = list(self._tasks) + list(self._dispatched)
        if self._retry_task is not None:
            tasks.append(self._retry_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._dispatched.clear()
        self._retry_task = None
        self._next_fire.clear()
        self.started = False
