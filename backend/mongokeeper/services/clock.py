"""Timezone-aware time source and cadence boundary arithmetic.

Storage keeps naive UTC datetimes (SQLite drops tzinfo on round-trip), so
every value read back from the store goes through ``localize`` before
calendar arithmetic is done on it.
"""

from __future__ import annotations

import calendar
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from mongokeeper.config import Settings
from mongokeeper.models.backup import Cadence

FOLDER_TIME_FORMAT = "%Y%m%d_%H%M%S"


class Clock:
    def __init__(self, tz_name: str = "UTC") -> None:
        self.tz = ZoneInfo(tz_name)

    def now(self) -> datetime:
        return datetime.now(self.tz)

    # ------------------------------------------------------------------
    # Conversions
    # ------------------------------------------------------------------

    def localize(self, dt: datetime) -> datetime:
        """Express *dt* in the configured zone; naive values are taken as UTC."""
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(self.tz)

    @staticmethod
    def to_utc(dt: datetime) -> datetime:
        """Naive UTC form of *dt*, as stored in the metadata table."""
        if dt.tzinfo is None:
            return dt
        return dt.astimezone(timezone.utc).replace(tzinfo=None)

    def seconds_until(self, when: datetime) -> float:
        delta = when.astimezone(timezone.utc) - self.now().astimezone(timezone.utc)
        return max(0.0, delta.total_seconds())

    def folder_name(self, dt: datetime, database_name: str) -> str:
        return f"{self.localize(dt).strftime(FOLDER_TIME_FORMAT)}_{database_name}"

    # ------------------------------------------------------------------
    # Period boundaries
    # ------------------------------------------------------------------

    def _midnight(self, day: date) -> datetime:
        return datetime.combine(day, time(0), tzinfo=self.tz)

    def start_of_day(self, dt: datetime) -> datetime:
        return self._midnight(self.localize(dt).date())

    def start_of_week(self, dt: datetime) -> datetime:
        """Sunday 00:00 of the week containing *dt*."""
        day = self.localize(dt).date()
        days_since_sunday = (day.weekday() + 1) % 7
        return self._midnight(day - timedelta(days=days_since_sunday))

    def start_of_month(self, dt: datetime) -> datetime:
        return self._midnight(self.localize(dt).date().replace(day=1))

    def start_of_year(self, dt: datetime) -> datetime:
        return self._midnight(self.localize(dt).date().replace(month=1, day=1))

    def period_start(self, cadence: Cadence, dt: datetime) -> datetime:
        if cadence is Cadence.WEEKLY:
            return self.start_of_week(dt)
        if cadence is Cadence.MONTHLY:
            return self.start_of_month(dt)
        if cadence is Cadence.YEARLY:
            return self.start_of_year(dt)
        return self.start_of_day(dt)

    def subtract(self, dt: datetime, amount: int, unit: str) -> datetime:
        """Step back *amount* weeks, months or years in wall-clock time."""
        local = self.localize(dt)
        if unit == "weeks":
            return local - timedelta(weeks=amount)
        if unit == "months":
            months = amount
        elif unit == "years":
            months = amount * 12
        else:
            raise ValueError(f"Unsupported unit: {unit}")

        index = local.year * 12 + (local.month - 1) - months
        year, month = divmod(index, 12)
        month += 1
        day = min(local.day, calendar.monthrange(year, month)[1])
        return local.replace(year=year, month=month, day=day)

    # ------------------------------------------------------------------
    # Trigger alignment
    # ------------------------------------------------------------------

    def is_weekly_slot(self, dt: datetime, slot_hours: int) -> bool:
        """True when *dt* falls on the hour of one of the weekly slots.

        Slots up to a day long are aligned on the hour of day; longer
        slots count hours from the start of the week.
        """
        if slot_hours <= 0:
            return False
        local = self.localize(dt)
        if local.minute != 0:
            return False
        if slot_hours <= 24:
            return local.hour % slot_hours == 0
        week_start = self.start_of_week(local)
        hours = (local.date() - week_start.date()).days * 24 + local.hour
        return hours % slot_hours == 0

    def next_fire(self, cadence: Cadence, now: datetime, settings: Settings) -> datetime:
        """Next trigger instant for the cadence's timer, strictly after *now*."""
        local = self.localize(now).replace(second=0, microsecond=0)
        today = local.date()

        if cadence is Cadence.DAILY:
            interval = settings.daily_backup_interval_minutes
            minutes = local.hour * 60 + local.minute
            upcoming = (minutes // interval + 1) * interval
            if upcoming >= 24 * 60:
                return self._midnight(today + timedelta(days=1))
            return self._midnight(today) + timedelta(minutes=upcoming)

        if cadence is Cadence.WEEKLY:
            slot = settings.weekly_slot_hours
            hour_start = local.replace(minute=0)
            for step in range(1, 24 * 14 + 1):
                candidate = hour_start + timedelta(hours=step)
                if self.is_weekly_slot(candidate, slot):
                    return candidate
            raise ValueError(f"No weekly slot found for a {slot}-hour spacing")

        if cadence is Cadence.MONTHLY:
            year, month = (today.year + 1, 1) if today.month == 12 else (today.year, today.month + 1)
            return self._midnight(date(year, month, 1))

        return self._midnight(date(today.year + 1, 1, 1))
