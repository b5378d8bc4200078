"""Application configuration using Pydantic Settings."""
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # App
    app_name: str = "Attendance Streaks"
    debug: bool = False
    log_level: str = "INFO"
    log_format: str = "pretty"  # pretty or json

    # MongoDB
    mongodb_url: str = "mongodb://localhost:27017"
    mongodb_db_name: str = "attendance"

    # School calendar: "yesterday" and weekdays are computed in this zone
    timezone: str = "Asia/Manila"

    # Streak engine
    streak_lease_minutes: int = 5
    streak_batch_size: int = 450  # write operations per committed batch
    begin_run_max_retries: int = 5
    backfill_dry_run: bool = False  # when true only counts planned absences
    run_maintenance_on_startup: bool = False

    # Firebase (FCM)
    firebase_credentials_path: str = ""
    fcm_alert_topic: str = "attendance-alerts"

    # CORS (comma-separated origins)
    cors_origins: str = "http://localhost:5173"

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except ZoneInfoNotFoundError as e:
            raise ValueError(f"Unknown timezone: {value}") from e
        return value

    @field_validator("streak_batch_size", "streak_lease_minutes", "begin_run_max_retries")
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be a positive integer")
        return value

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


settings = Settings()
