from functools import lru_cache
from typing import Annotated, List
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

# Soft-deleted readings stay queryable this many days past the retention window.
PURGE_GRACE_DAYS = 7


class Settings(BaseSettings):
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "weather"
    postgres_user: str = "weather"
    postgres_password: str = "weatherpass"

    mqtt_enabled: bool = False
    mqtt_host: str = "localhost"
    mqtt_port: int = 1883
    mqtt_username: str | None = None
    mqtt_password: str | None = None
    mqtt_alert_topic_prefix: str = "alerts"

    api_key: str | None = None
    allowed_origins: List[str] = ["*"]

    openweather_api_key: str | None = None
    openweather_api_url: str = "https://api.openweathermap.org/data/2.5/weather"
    weather_city: str = "Pune"
    weather_country_code: str = "IN"
    provider_timeout_seconds: float = 10.0

    cron_data_fetch: str = "*/30 * * * *"
    cron_dashboard_update: str = "0 * * * *"
    cron_data_cleanup: str = "0 0 * * *"
    cron_alert_check: str = "*/15 * * * *"

    alert_high_temp_threshold: float = 35.0
    alert_high_humidity_threshold: float = 80.0
    alert_extreme_weather: Annotated[List[str], NoDecode] = [
        "Storm",
        "Thunderstorm",
        "Hurricane",
        "Tornado",
    ]
    alert_cooldown_minutes: int = Field(15, ge=1, le=1440)
    alert_auto_resolve: bool = False

    data_retention_days: int = Field(2, ge=1)
    timezone: str = "Asia/Kolkata"

    scheduler_enabled: bool = True
    shutdown_timeout_seconds: float = 30.0
    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)

    @field_validator("alert_extreme_weather", mode="before")
    @classmethod
    def split_conditions(cls, value):
        # ALERT_EXTREME_WEATHER=Storm,Tornado
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator(
        "cron_data_fetch",
        "cron_dashboard_update",
        "cron_data_cleanup",
        "cron_alert_check",
    )
    @classmethod
    def check_cron(cls, value: str) -> str:
        if not croniter.is_valid(value):
            raise ValueError(f"Invalid cron expression: {value!r}")
        return value

    @field_validator("timezone")
    @classmethod
    def check_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone: {value!r}") from exc
        return value

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @property
    def postgres_dsn(self) -> str:
        return (
            f"postgresql://{self.postgres_user}:"
            f"{self.postgres_password}@{self.postgres_host}:"
            f"{self.postgres_port}/{self.postgres_db}"
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()
