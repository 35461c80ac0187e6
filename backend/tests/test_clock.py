from __future__ import annotations

from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from mongokeeper.models.backup import Cadence
from mongokeeper.services.clock import Clock

UTC = timezone.utc
BERLIN = ZoneInfo("Europe/Berlin")


@pytest.fixture
def clock() -> Clock:
    return Clock("UTC")


class TestConversions:
    def test_naive_values_are_treated_as_utc(self):
        berlin = Clock("Europe/Berlin")
        local = berlin.localize(datetime(2024, 1, 1, 23, 30))
        assert local == datetime(2024, 1, 2, 0, 30, tzinfo=BERLIN)
        assert local.utcoffset().total_seconds() == 3600

    def test_to_utc_drops_tzinfo(self):
        aware = datetime(2024, 7, 1, 2, 0, tzinfo=BERLIN)
        assert Clock.to_utc(aware) == datetime(2024, 7, 1, 0, 0)
        assert Clock.to_utc(datetime(2024, 7, 1, 2, 0)) == datetime(2024, 7, 1, 2, 0)

    def test_folder_name_uses_local_time(self):
        berlin = Clock("Europe/Berlin")
        name = berlin.folder_name(datetime(2024, 5, 6, 7, 8, 9, tzinfo=UTC), "shop")
        assert name == "20240506_090809_shop"

    def test_folder_names_sort_chronologically(self, clock):
        earlier = clock.folder_name(datetime(2024, 9, 30, 23, 59, 59, tzinfo=UTC), "shop")
        later = clock.folder_name(datetime(2024, 10, 1, 0, 0, 0, tzinfo=UTC), "shop")
        assert earlier < later

    def test_seconds_until_is_never_negative(self, clock):
        assert clock.seconds_until(datetime(2000, 1, 1, tzinfo=UTC)) == 0.0


class TestPeriodBoundaries:
    def test_week_starts_on_sunday(self, clock):
        wednesday = datetime(2024, 3, 13, 15, 45, tzinfo=UTC)
        assert clock.start_of_week(wednesday) == datetime(2024, 3, 10, tzinfo=UTC)

    def test_sunday_is_its_own_week_start(self, clock):
        sunday = datetime(2024, 3, 10, 0, 0, tzinfo=UTC)
        assert clock.start_of_week(sunday) == sunday

    def test_saturday_belongs_to_previous_sunday(self, clock):
        saturday = datetime(2024, 3, 16, 23, 59, tzinfo=UTC)
        assert clock.start_of_week(saturday) == datetime(2024, 3, 10, tzinfo=UTC)

    def test_boundaries_in_configured_zone(self):
        berlin = Clock("Europe/Berlin")
        # 23:30 UTC on Jan 31 is already February 1st in Berlin
        instant = datetime(2024, 1, 31, 23, 30, tzinfo=UTC)
        assert berlin.start_of_day(instant) == datetime(2024, 2, 1, tzinfo=BERLIN)
        assert berlin.start_of_month(instant) == datetime(2024, 2, 1, tzinfo=BERLIN)
        assert berlin.start_of_year(instant) == datetime(2024, 1, 1, tzinfo=BERLIN)

    def test_period_start_dispatches_on_cadence(self, clock):
        instant = datetime(2024, 8, 21, 10, 0, tzinfo=UTC)
        assert clock.period_start(Cadence.DAILY, instant) == datetime(2024, 8, 21, tzinfo=UTC)
        assert clock.period_start(Cadence.WEEKLY, instant) == datetime(2024, 8, 18, tzinfo=UTC)
        assert clock.period_start(Cadence.MONTHLY, instant) == datetime(2024, 8, 1, tzinfo=UTC)
        assert clock.period_start(Cadence.YEARLY, instant) == datetime(2024, 1, 1, tzinfo=UTC)


class TestSubtract:
    def test_weeks(self, clock):
        result = clock.subtract(datetime(2024, 3, 6, 12, tzinfo=UTC), 4, "weeks")
        assert result == datetime(2024, 2, 7, 12, tzinfo=UTC)

    def test_months_clamp_to_month_end(self, clock):
        result = clock.subtract(datetime(2024, 3, 31, tzinfo=UTC), 1, "months")
        assert result == datetime(2024, 2, 29, tzinfo=UTC)

    def test_months_cross_year_boundary(self, clock):
        result = clock.subtract(datetime(2024, 2, 15, tzinfo=UTC), 14, "months")
        assert result == datetime(2022, 12, 15, tzinfo=UTC)

    def test_years_from_leap_day(self, clock):
        result = clock.subtract(datetime(2024, 2, 29, tzinfo=UTC), 1, "years")
        assert result == datetime(2023, 2, 28, tzinfo=UTC)

    def test_unknown_unit(self, clock):
        with pytest.raises(ValueError):
            clock.subtract(datetime(2024, 1, 1, tzinfo=UTC), 1, "fortnights")


class TestWeeklySlots:
    def test_daily_spacing_hits_midnight_only(self, clock):
        assert clock.is_weekly_slot(datetime(2024, 3, 13, 0, 0, tzinfo=UTC), 24)
        assert not clock.is_weekly_slot(datetime(2024, 3, 13, 12, 0, tzinfo=UTC), 24)

    def test_off_the_hour_is_never_a_slot(self, clock):
        assert not clock.is_weekly_slot(datetime(2024, 3, 13, 0, 30, tzinfo=UTC), 24)

    def test_sub_day_spacing(self, clock):
        assert clock.is_weekly_slot(datetime(2024, 3, 13, 12, 0, tzinfo=UTC), 12)
        assert not clock.is_weekly_slot(datetime(2024, 3, 13, 6, 0, tzinfo=UTC), 12)

    def test_multi_day_spacing_counts_from_week_start(self, clock):
        # 56-hour spacing: Sunday 00:00, Tuesday 08:00, Thursday 16:00
        assert clock.is_weekly_slot(datetime(2024, 3, 10, 0, 0, tzinfo=UTC), 56)
        assert clock.is_weekly_slot(datetime(2024, 3, 12, 8, 0, tzinfo=UTC), 56)
        assert clock.is_weekly_slot(datetime(2024, 3, 14, 16, 0, tzinfo=UTC), 56)
        assert not clock.is_weekly_slot(datetime(2024, 3, 12, 0, 0, tzinfo=UTC), 56)

    def test_disabled_spacing(self, clock):
        assert not clock.is_weekly_slot(datetime(2024, 3, 10, 0, 0, tzinfo=UTC), 0)


class TestNextFire:
    def test_daily_aligns_to_interval(self, clock, make_settings):
        settings = make_settings(daily_backup_interval_minutes=15)
        fire = clock.next_fire(Cadence.DAILY, datetime(2024, 3, 13, 10, 7, 30, tzinfo=UTC), settings)
        assert fire == datetime(2024, 3, 13, 10, 15, tzinfo=UTC)

    def test_daily_is_strictly_after_now(self, clock, make_settings):
        settings = make_settings(daily_backup_interval_minutes=15)
        fire = clock.next_fire(Cadence.DAILY, datetime(2024, 3, 13, 10, 15, tzinfo=UTC), settings)
        assert fire == datetime(2024, 3, 13, 10, 30, tzinfo=UTC)

    def test_daily_rolls_over_to_midnight(self, clock, make_settings):
        settings = make_settings(daily_backup_interval_minutes=90)
        fire = clock.next_fire(Cadence.DAILY, datetime(2024, 3, 13, 22, 45, tzinfo=UTC), settings)
        assert fire == datetime(2024, 3, 14, 0, 0, tzinfo=UTC)

    def test_weekly_default_is_next_midnight(self, clock, make_settings):
        settings = make_settings()
        fire = clock.next_fire(Cadence.WEEKLY, datetime(2024, 3, 13, 10, 0, tzinfo=UTC), settings)
        assert fire == datetime(2024, 3, 14, 0, 0, tzinfo=UTC)

    def test_weekly_twice_a_day(self, clock, make_settings):
        settings = make_settings(number_of_weekly_backups=14)
        fire = clock.next_fire(Cadence.WEEKLY, datetime(2024, 3, 13, 10, 0, tzinfo=UTC), settings)
        assert fire == datetime(2024, 3, 13, 12, 0, tzinfo=UTC)

    def test_weekly_once_a_week_is_sunday_midnight(self, clock, make_settings):
        settings = make_settings(number_of_weekly_backups=1)
        fire = clock.next_fire(Cadence.WEEKLY, datetime(2024, 3, 13, 10, 0, tzinfo=UTC), settings)
        assert fire == datetime(2024, 3, 17, 0, 0, tzinfo=UTC)

    def test_monthly_and_yearly(self, clock, make_settings):
        settings = make_settings()
        now = datetime(2024, 12, 15, 8, 0, tzinfo=UTC)
        assert clock.next_fire(Cadence.MONTHLY, now, settings) == datetime(2025, 1, 1, tzinfo=UTC)
        assert clock.next_fire(Cadence.YEARLY, now, settings) == datetime(2025, 1, 1, tzinfo=UTC)
        mid_year = datetime(2024, 6, 1, 0, 0, tzinfo=UTC)
        assert clock.next_fire(Cadence.MONTHLY, mid_year, settings) == datetime(2024, 7, 1, tzinfo=UTC)

    def test_fires_in_configured_zone(self, make_settings):
        berlin = Clock("Europe/Berlin")
        settings = make_settings(timezone="Europe/Berlin")
        fire = berlin.next_fire(Cadence.MONTHLY, datetime(2024, 3, 15, tzinfo=UTC), settings)
        assert fire == datetime(2024, 4, 1, tzinfo=BERLIN)
        assert Clock.to_utc(fire) == datetime(2024, 3, 31, 22, 0)
