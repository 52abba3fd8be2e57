"""Application configuration."""

import logging
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    PROJECT_NAME: str = "hzpp-delay-stats"
    DEBUG: bool = False

    # Database Settings
    DATABASE_URL: str = Field(validation_alias="SECRET_DATABASE_URL")
    DATABASE_ECHO: bool = False
    DATABASE_POOL_SIZE: int = 5  # Connection pool size for worker engine
    DATABASE_MAX_OVERFLOW: int = 10  # Max overflow connections for worker engine

    # Redis Settings
    REDIS_URL: str = Field(validation_alias="SECRET_REDIS_URL")

    # Celery Settings
    CELERY_BROKER_URL: str = Field(validation_alias="SECRET_CELERY_BROKER_URL")
    CELERY_RESULT_BACKEND: str = Field(validation_alias="SECRET_CELERY_RESULT_BACKEND")

    # HZPP upstream endpoints
    HZPP_DELAY_URL: str = "https://traindelay.hzpp.hr/train/delay"
    HZPP_PLANNER_URL: str = "https://josipsalkovic.com/hzpp/planer/v3"
    HZPP_API_TOKEN: str | None = Field(default=None, validation_alias="SECRET_HZPP_API_TOKEN")

    # Network settings
    TIMEZONE: str = "Europe/Zagreb"
    NETWORK_REGION: str = "HR"

    @field_validator("TIMEZONE", mode="after")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        """Ensure TIMEZONE names a known IANA zone."""
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            msg = f"Invalid TIMEZONE '{v}'"
            raise ValueError(msg) from e
        return v

    # Scrape cycle settings
    SCRAPE_INTERVAL_SECONDS: float = Field(default=60.0, gt=0)
    # Local wall-clock time of the daily import, and how many days past today it covers
    TIMETABLE_IMPORT_HOUR: int = Field(default=0, ge=0, le=23)
    TIMETABLE_IMPORT_MINUTE: int = Field(default=15, ge=0, le=59)
    TIMETABLE_IMPORT_DAYS_AHEAD: int = Field(default=1, ge=0, le=7)
    ACTIVE_WINDOW_LOOKBACK_MINUTES: int = Field(default=360, ge=0)  # Runs that started earlier may still be running
    ACTIVE_WINDOW_LOOKAHEAD_MINUTES: int = Field(default=15, ge=0)
    SCRAPE_CONCURRENCY: int = Field(default=8, ge=1, le=64)
    CYCLE_TIMEOUT_SECONDS: float = Field(default=240.0, gt=0)  # Below the Celery soft time limit

    # Fetch settings
    FETCH_TIMEOUT_SECONDS: float = Field(default=10.0, gt=0)
    FETCH_RETRY_ATTEMPTS: int = Field(default=3, ge=1)
    FETCH_BACKOFF_BASE_SECONDS: float = Field(default=1.0, ge=0)
    FETCH_BACKOFF_MAX_SECONDS: float = Field(default=30.0, ge=0)

    # Reconciliation settings
    MATCH_TOLERANCE_MINUTES: int = Field(default=180, ge=0)
    PERSISTENCE_RETRY_ATTEMPTS: int = Field(default=3, ge=1)
    PERSISTENCE_RETRY_BACKOFF_SECONDS: float = Field(default=0.2, ge=0)

    # Alert Settings
    ALERT_COOLDOWN_MINUTES: int = Field(default=1440, ge=1)  # One alert per condition per calendar day

    # OpenTelemetry Settings (for observability)
    OTEL_ENABLED: bool = False
    OTEL_SERVICE_NAME: str = "hzpp-delay-stats"
    OTEL_ENVIRONMENT: str = "production"

    # OTLP Exporter Endpoints (separate for traces and logs)
    OTEL_EXPORTER_OTLP_TRACES_ENDPOINT: str | None = None
    OTEL_EXPORTER_OTLP_LOGS_ENDPOINT: str | None = None
    OTEL_EXPORTER_OTLP_HEADERS: str | None = Field(default=None, validation_alias="SECRET_OTEL_HEADERS")

    # Level for OTLP log export; NOTSET exports everything the root logger lets through
    OTEL_LOG_LEVEL: str = "NOTSET"

    LOG_LEVEL: str = "INFO"

    @field_validator("LOG_LEVEL", "OTEL_LOG_LEVEL", mode="after")
    @classmethod
    def validate_log_level(cls, v: str, info: ValidationInfo) -> str:
        """Normalise to an upper-case stdlib level name."""
        normalized = v.upper()
        known = logging.getLevelNamesMapping()
        if normalized not in known:
            msg = f"Invalid {info.field_name} '{v}'. Must be one of: {', '.join(sorted(known))}"
            raise ValueError(msg)
        return normalized

    @property
    def tzinfo(self) -> ZoneInfo:
        """Network time zone used for service days and scraped timestamps."""
        return ZoneInfo(self.TIMEZONE)


settings = Settings()


def _is_blank(value: object) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def require_config(*field_names: str) -> None:
    """
    Fail fast when settings a component depends on are unset or blank.

    Args:
        *field_names: Settings attribute names

    Raises:
        ValueError: Listing every missing field

    Example:
        from delay_stats.core.config import require_config, settings
        require_config("CELERY_BROKER_URL", "CELERY_RESULT_BACKEND")
    """
    missing = [name for name in field_names if _is_blank(getattr(settings, name, None))]
    if missing:
        msg = f"Required configuration missing: {', '.join(missing)}"
        raise ValueError(msg)
