import os
from pathlib import Path

from loguru import logger
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def get_database_url() -> str:
    """Get database URL, using absolute path for SQLite to avoid path resolution issues.

    SQLite is for local development only. Set DATABASE_URL to a PostgreSQL
    connection string in any shared deployment.
    """
    db_url = os.getenv("DATABASE_URL", "")
    if db_url:
        logger.info(f"Using DATABASE_URL from environment: {db_url}")
        return db_url

    db_path = Path(__file__).parent.parent.parent / "cycleflow.db"
    abs_path = db_path.resolve()
    db_url = f"sqlite:///{abs_path}"
    logger.warning(f"Using SQLite database (LOCAL DEV ONLY): {db_url}")
    return db_url


class Settings(BaseSettings):
    database_url: str = Field(
        default_factory=get_database_url,
        validation_alias="DATABASE_URL",
    )
    redis_url: str = Field(default="redis://localhost:6379/0", validation_alias="REDIS_URL")
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    log_file: str = Field(default="", validation_alias="LOG_FILE")

    # Webhook receiver
    garmin_webhook_secret: str = Field(
        default="",
        validation_alias="GARMIN_WEBHOOK_SECRET",
        description="Shared HMAC secret; empty disables signature verification",
    )
    webhook_rate_limit_max_requests: int = Field(default=100, validation_alias="WEBHOOK_RATE_LIMIT_MAX_REQUESTS")
    webhook_rate_limit_window_seconds: float = Field(default=60.0, validation_alias="WEBHOOK_RATE_LIMIT_WINDOW_SECONDS")
    webhook_max_payload_bytes: int = Field(default=10 * 1024 * 1024, validation_alias="WEBHOOK_MAX_PAYLOAD_BYTES")
    rate_limit_backend: str = Field(
        default="memory",
        validation_alias="RATE_LIMIT_BACKEND",
        description="memory (single instance) or redis (shared across instances)",
    )
    event_dispatch_backend: str = Field(
        default="background",
        validation_alias="EVENT_DISPATCH_BACKEND",
        description="background (run after response), executor (thread pool) or celery",
    )
    event_executor_workers: int = Field(default=4, validation_alias="EVENT_EXECUTOR_WORKERS")

    # Storage
    track_point_chunk_size: int = Field(default=1000, validation_alias="TRACK_POINT_CHUNK_SIZE")

    # Duplicate detection
    near_duplicate_window_seconds: int = Field(default=300, validation_alias="NEAR_DUPLICATE_WINDOW_SECONDS")
    near_duplicate_distance_km: float = Field(default=0.1, validation_alias="NEAR_DUPLICATE_DISTANCE_KM")

    # Strava bulk import
    strava_api_base_url: str = Field(default="https://www.strava.com/api/v3", validation_alias="STRAVA_API_BASE_URL")
    strava_page_size: int = Field(default=200, validation_alias="STRAVA_PAGE_SIZE")
    strava_page_delay_seconds: float = Field(default=0.2, validation_alias="STRAVA_PAGE_DELAY_SECONDS")
    strava_max_pages: int = Field(default=50, validation_alias="STRAVA_MAX_PAGES")
    strava_stream_delay_seconds: float = Field(default=1.0, validation_alias="STRAVA_STREAM_DELAY_SECONDS")
    bulk_import_error_sample_size: int = Field(default=5, validation_alias="BULK_IMPORT_ERROR_SAMPLE_SIZE")

    # Garmin backfill requests
    garmin_api_base_url: str = Field(
        default="https://apis.garmin.com/wellness-api/rest",
        validation_alias="GARMIN_API_BASE_URL",
    )
    garmin_backfill_chunk_days: int = Field(default=30, validation_alias="GARMIN_BACKFILL_CHUNK_DAYS")
    garmin_backfill_request_delay_seconds: float = Field(
        default=0.1,
        validation_alias="GARMIN_BACKFILL_REQUEST_DELAY_SECONDS",
    )

    http_timeout_seconds: float = Field(default=15.0, validation_alias="HTTP_TIMEOUT_SECONDS")

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """Validate that log level is one of the standard logging levels."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper_value = value.upper()
        if upper_value not in valid_levels:
            logger.warning(f"Invalid LOG_LEVEL '{value}'. Valid levels are: {', '.join(valid_levels)}. Defaulting to INFO.")
            return "INFO"
        return upper_value

    @field_validator("rate_limit_backend")
    @classmethod
    def validate_rate_limit_backend(cls, value: str) -> str:
        """Fall back to the in-memory store on unknown backends."""
        lowered = value.lower()
        if lowered not in {"memory", "redis"}:
            logger.warning(f"Unknown RATE_LIMIT_BACKEND '{value}', using in-memory rate limiting")
            return "memory"
        if lowered == "memory":
            is_production = bool(os.getenv("RENDER") or os.getenv("RAILWAY_ENVIRONMENT") or os.getenv("DYNO"))
            if is_production:
                logger.warning(
                    "In-memory webhook rate limiting in a production environment: "
                    "limits are per process. Set RATE_LIMIT_BACKEND=redis when running several instances."
                )
        return lowered

    @field_validator("event_dispatch_backend")
    @classmethod
    def validate_event_dispatch_backend(cls, value: str) -> str:
        """Fall back to FastAPI background tasks on unknown backends."""
        lowered = value.lower()
        if lowered not in {"background", "executor", "celery"}:
            logger.warning(f"Unknown EVENT_DISPATCH_BACKEND '{value}', using background tasks")
            return "background"
        return lowered

    @field_validator("track_point_chunk_size", "strava_page_size", "strava_max_pages")
    @classmethod
    def validate_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("garmin_webhook_secret")
    @classmethod
    def warn_missing_secret(cls, value: str) -> str:
        if not value:
            logger.warning("GARMIN_WEBHOOK_SECRET is not set, webhook signature verification is disabled")
        return value


settings = Settings()
