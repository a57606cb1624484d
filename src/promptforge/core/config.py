"""Application configuration using Pydantic BaseSettings."""

import logging
from datetime import timedelta

import structlog
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Database Configuration
    database_url: str = Field(default="sqlite+aiosqlite:///./promptforge.db", alias="DATABASE_URL")
    db_pool_size: int = Field(default=1, alias="DB_POOL_SIZE")

    # Application Environment
    app_env: str = Field(default="development", alias="APP_ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Replicate Image Generation
    replicate_api_token: str = Field(default="", alias="REPLICATE_API_TOKEN")
    replicate_model: str = Field(default="google/nano-banana", alias="REPLICATE_MODEL")
    replicate_reference_field: str = Field(
        default="reference_images", alias="REPLICATE_REFERENCE_FIELD"
    )
    replicate_files_url: str = Field(
        default="https://api.replicate.com/v1/files", alias="REPLICATE_FILES_URL"
    )

    # Job polling
    poll_interval_seconds: float = Field(default=3.0, gt=0, alias="POLL_INTERVAL_SECONDS")
    max_wait_seconds: float = Field(default=300.0, gt=0, alias="MAX_WAIT_SECONDS")

    # Batch limits
    max_outputs_per_batch: int = Field(default=8, ge=1, alias="MAX_OUTPUTS_PER_BATCH")
    max_prompt_length: int = Field(default=1000, ge=1, alias="MAX_PROMPT_LENGTH")

    # Reference image uploads (provider keeps staged files for 24 hours)
    upload_validity_hours: float = Field(default=24.0, gt=0, alias="UPLOAD_VALIDITY_HOURS")
    upload_grace_hours: float = Field(default=4.0, ge=0, alias="UPLOAD_GRACE_HOURS")
    refresh_interval_seconds: float = Field(default=900.0, gt=0, alias="REFRESH_INTERVAL_SECONDS")

    # Local storage
    reference_dir: str = Field(default="./data/references", alias="REFERENCE_DIR")
    output_dir: str = Field(default="./data/generated", alias="OUTPUT_DIR")
    download_timeout_seconds: float = Field(default=30.0, gt=0, alias="DOWNLOAD_TIMEOUT_SECONDS")

    @property
    def upload_validity(self) -> timedelta:
        return timedelta(hours=self.upload_validity_hours)

    @property
    def upload_grace_margin(self) -> timedelta:
        return timedelta(hours=self.upload_grace_hours)

    @model_validator(mode="after")
    def validate_required_config(self) -> "Settings":
        """Validate required configuration on startup.

        Fails fast with a clear error message if configuration is incomplete.
        Validation is skipped in test/development environments to avoid breaking tests.
        """
        if self.upload_grace_hours >= self.upload_validity_hours:
            raise ValueError(
                "UPLOAD_GRACE_HOURS must be smaller than UPLOAD_VALIDITY_HOURS, "
                "otherwise every staged reference image is considered stale immediately."
            )

        if self.app_env in ("test", "testing", "development"):
            return self

        if not self.replicate_api_token:
            raise ValueError(
                "CRITICAL: Missing required environment variable:\n\n"
                "  - REPLICATE_API_TOKEN: Get your API token from "
                "https://replicate.com/account/api-tokens\n\n"
                "Please update your .env file and restart."
            )

        return self


def configure_logging(settings: Settings) -> None:
    """Configure structlog based on application environment.

    - Production: JSON output for log aggregation
    - Development: Console output for human readability
    """
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    if settings.app_env == "production":
        renderer = structlog.processors.JSONRenderer()
        processors = [
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ]
    else:
        processors = [
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
