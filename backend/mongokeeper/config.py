from __future__ import annotations

import math
import re
from functools import lru_cache
from pathlib import Path
from urllib.parse import urlsplit
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from mongokeeper.models.backup import Cadence

# Natural unit of the age-based retention setting for each coarse cadence
AGE_UNITS: dict[Cadence, str] = {
    Cadence.WEEKLY: "weeks",
    Cadence.MONTHLY: "months",
    Cadence.YEARLY: "years",
}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    mongo_connection_string: str = ""

    # Daily cadence: fixed-interval timer plus count-based retention
    daily_backup_interval_minutes: int = 60
    max_daily_backups: int = -1  # -1 keeps every daily backup
    # Weekly cadence: count drives slot spacing, age in weeks
    number_of_weekly_backups: int = 7
    max_age_of_weekly_backups: int = 4
    # Monthly cadence: fixed to the 1st at midnight, age in months
    number_of_monthly_backups: int = 12
    max_age_of_monthly_backups: int = 12
    # Yearly cadence: fixed to January 1st at midnight, age in years
    number_of_yearly_backups: int = 5
    max_age_of_yearly_backups: int = 5

    backup_path: Path = Path("/backups")
    timezone: str = "UTC"
    web_ui_port: int = 3000
    db_url: str = ""      # empty -> sqlite database inside backup_path
    log_file: str = ""    # empty -> backup.log inside backup_path, "-" disables
    log_level: str = "INFO"

    # Dump tool
    mongodump_path: str = "mongodump"
    dump_timeout_seconds: int = 0  # 0 = wait for the tool indefinitely
    connect_timeout_seconds: int = 10

    # Startup behaviour
    backfill_delay_seconds: float = 5.0
    backfill_retry_seconds: float = 30.0
    scheduler_enabled: bool = True  # false serves the read API only
    run_initial_backup: bool = True
    prune_records: bool = False  # retention also deletes metadata rows

    @field_validator("daily_backup_interval_minutes")
    @classmethod
    def _check_interval(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("DAILY_BACKUP_INTERVAL_MINUTES must be a positive number of minutes")
        return value

    @field_validator("max_daily_backups")
    @classmethod
    def _check_max_daily(cls, value: int) -> int:
        if value == 0 or value < -1:
            raise ValueError(
                "MAX_DAILY_BACKUPS cannot be 0. Use -1 for unlimited or a positive number."
            )
        return value

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown TIMEZONE: {value!r}") from exc
        return value

    @field_validator("dump_timeout_seconds")
    @classmethod
    def _check_timeout(cls, value: int) -> int:
        if value < 0:
            raise ValueError("DUMP_TIMEOUT_SECONDS must be 0 (no timeout) or positive")
        return value

    @model_validator(mode="after")
    def _check_connection_string(self) -> Settings:
        self.mongo_connection_string = self.mongo_connection_string.strip()
        if not self.mongo_connection_string:
            raise ValueError(
                "MONGO_CONNECTION_STRING environment variable is required"
            )
        return self

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def database_name(self) -> str:
        return extract_database_name(self.mongo_connection_string)

    @property
    def resolved_db_url(self) -> str:
        if self.db_url:
            return self.db_url
        return f"sqlite:///{self.backup_path / 'backup_metadata.db'}"

    @property
    def resolved_log_file(self) -> Path | None:
        if self.log_file == "-":
            return None
        if self.log_file:
            return Path(self.log_file)
        return self.backup_path / "backup.log"

    @property
    def redacted_connection_string(self) -> str:
        return re.sub(r"//.*@", "//[REDACTED]@", self.mongo_connection_string)

    @property
    def weekly_slot_hours(self) -> int:
        """Hours between weekly slots when spreading N backups across a week."""
        if self.number_of_weekly_backups <= 0:
            return 0
        per_day = self.number_of_weekly_backups / 7
        return max(1, math.floor(24 / per_day + 0.5))

    def backup_count(self, cadence: Cadence) -> int:
        return {
            Cadence.DAILY: self.max_daily_backups,
            Cadence.WEEKLY: self.number_of_weekly_backups,
            Cadence.MONTHLY: self.number_of_monthly_backups,
            Cadence.YEARLY: self.number_of_yearly_backups,
        }[cadence]

    def max_age(self, cadence: Cadence) -> int:
        return {
            Cadence.WEEKLY: self.max_age_of_weekly_backups,
            Cadence.MONTHLY: self.max_age_of_monthly_backups,
            Cadence.YEARLY: self.max_age_of_yearly_backups,
        }[cadence]

    def retention_limit(self, cadence: Cadence) -> tuple[int, str]:
        """Return the (value, unit) pair describing how a cadence is retained."""
        if cadence is Cadence.DAILY:
            return self.max_daily_backups, "backups"
        return self.max_age(cadence), AGE_UNITS[cadence]

    def cadence_dir(self, cadence: Cadence) -> Path:
        return self.backup_path / cadence.value


def extract_database_name(connection_string: str) -> str:
    """Database name from the connection string path, "default" when absent."""
    try:
        path = urlsplit(connection_string).path
    except ValueError:
        return "default"
    name = path.lstrip("/").split("/", 1)[0]
    return name or "default"


@lru_cache
def get_settings() -> Settings:
    return Settings()
