"""Application configuration using Pydantic BaseSettings."""

import logging

import structlog
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Database Configuration
    database_url: str = Field(alias="DATABASE_URL")
    db_pool_size: int = Field(default=20, alias="DB_POOL_SIZE")

    # Application Environment
    app_env: str = Field(default="development", alias="APP_ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Server Configuration
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8000, alias="PORT")

    # Worker (one job type per process)
    worker_enabled: bool = Field(default=True, alias="WORKER_ENABLED")
    worker_job_type: str = Field(default="generate", alias="WORKER_JOB_TYPE")
    worker_provider: str = Field(default="gemini", alias="WORKER_PROVIDER")
    worker_concurrency: int = Field(default=2, ge=1, alias="WORKER_CONCURRENCY")
    rate_limit_max: int = Field(default=10, ge=0, alias="RATE_LIMIT_MAX")
    rate_limit_duration_ms: int = Field(default=60000, ge=1, alias="RATE_LIMIT_DURATION_MS")

    # Retry policy
    retry_base_delay_ms: int = Field(default=30000, ge=0, alias="RETRY_BASE_DELAY_MS")
    max_attempts: int = Field(default=3, ge=1, alias="MAX_ATTEMPTS")

    # Queue transport
    queue_poll_interval_seconds: float = Field(default=1.0, alias="QUEUE_POLL_INTERVAL_SECONDS")
    queue_lease_seconds: int = Field(default=30, ge=1, alias="QUEUE_LEASE_SECONDS")
    queue_stalled_check_seconds: int = Field(default=30, ge=1, alias="QUEUE_STALLED_CHECK_SECONDS")
    queue_max_stalled_count: int = Field(default=1, ge=0, alias="QUEUE_MAX_STALLED_COUNT")
    queue_enqueue_timeout_seconds: float = Field(default=5.0, alias="QUEUE_ENQUEUE_TIMEOUT_SECONDS")
    queue_remove_on_complete_age_seconds: int = Field(
        default=24 * 3600, alias="QUEUE_REMOVE_ON_COMPLETE_AGE_SECONDS"
    )
    queue_remove_on_complete_count: int = Field(
        default=1000, alias="QUEUE_REMOVE_ON_COMPLETE_COUNT"
    )
    queue_remove_on_fail_age_seconds: int = Field(
        default=7 * 24 * 3600, alias="QUEUE_REMOVE_ON_FAIL_AGE_SECONDS"
    )

    # Reconciliation sweeps
    processing_max_age_seconds: int = Field(default=3600, alias="PROCESSING_MAX_AGE_SECONDS")
    reconcile_interval_seconds: int = Field(default=60, alias="RECONCILE_INTERVAL_SECONDS")
    job_retention_days: int = Field(default=30, alias="JOB_RETENTION_DAYS")

    # Post-processing
    thumbnail_sizes: str = Field(default="512,256", alias="THUMBNAIL_SIZES")

    # Gemini (synchronous provider)
    gemini_api_key: str = Field(default="", alias="GEMINI_API_KEY")
    gemini_base_url: str = Field(
        default="https://generativelanguage.googleapis.com/v1beta", alias="GEMINI_BASE_URL"
    )
    gemini_model: str = Field(default="gemini-2.5-flash-image", alias="GEMINI_MODEL")
    gemini_timeout_seconds: float = Field(default=120.0, alias="GEMINI_TIMEOUT_SECONDS")

    # NanoBanana (asynchronous provider, completes via webhook)
    nanobanana_api_key: str = Field(default="", alias="NANOBANANA_API_KEY")
    nanobanana_base_url: str = Field(
        default="https://api.nanobananaapi.ai/api/v1", alias="NANOBANANA_BASE_URL"
    )
    nanobanana_timeout_seconds: float = Field(default=30.0, alias="NANOBANANA_TIMEOUT_SECONDS")
    nanobanana_callback_url: str = Field(
        default="http://localhost:8000/webhooks/generation", alias="NANOBANANA_CALLBACK_URL"
    )

    # Replicate (synchronous provider for design synthesis)
    replicate_api_token: str = Field(default="", alias="REPLICATE_API_TOKEN")
    replicate_model_version: str = Field(
        default="black-forest-labs/flux-schnell", alias="REPLICATE_MODEL_VERSION"
    )

    generation_prompt: str = Field(
        default=(
            "Create a creative fashion composition. Combine elements from both images to create "
            "a new artistic fashion concept. Focus on the clothing and style elements rather than "
            "realistic human depictions."
        ),
        alias="GENERATION_PROMPT",
    )

    # Webhooks
    webhook_secret: str = Field(default="", alias="WEBHOOK_SECRET")

    # Storage
    storage_root: str = Field(default="./storage", alias="STORAGE_ROOT")
    storage_public_base_url: str = Field(
        default="http://localhost:8000/files", alias="STORAGE_PUBLIC_BASE_URL"
    )
    download_timeout_seconds: float = Field(default=60.0, alias="DOWNLOAD_TIMEOUT_SECONDS")

    @property
    def thumbnail_sizes_list(self) -> list[int]:
        """Parse thumbnail sizes from comma-separated string, skipping invalid entries."""
        sizes = []
        for raw in self.thumbnail_sizes.split(","):
            raw = raw.strip()
            if raw.isdigit() and int(raw) > 0:
                sizes.append(int(raw))
        return sizes

    @model_validator(mode="after")
    def validate_required_config(self) -> "Settings":
        """Validate required configuration on startup.

        Ensures the credentials of the configured worker provider are present.
        Fails fast with clear error messages if configuration is incomplete.

        Validation is skipped in test environments to avoid breaking tests.
        """
        if self.app_env in ("test", "testing"):
            return self

        missing = []

        if self.worker_enabled:
            if self.worker_provider == "gemini" and not self.gemini_api_key:
                missing.append("GEMINI_API_KEY: required when WORKER_PROVIDER=gemini")
            if self.worker_provider == "nanobanana" and not self.nanobanana_api_key:
                missing.append("NANOBANANA_API_KEY: required when WORKER_PROVIDER=nanobanana")
            if self.worker_provider == "replicate" and not self.replicate_api_token:
                missing.append(
                    "REPLICATE_API_TOKEN: Get your API token from "
                    "https://replicate.com/account/api-tokens"
                )

        if missing:
            error_msg = "CRITICAL: Missing required environment variables:\n\n" + "\n".join(
                f"  - {m}" for m in missing
            )
            error_msg += "\n\nThe application cannot start without these variables."
            error_msg += "\nPlease update your .env file and restart."
            raise ValueError(error_msg)

        return self


def configure_logging(settings: Settings) -> None:
    """Configure structlog based on application environment.

    - Production: JSON output for log aggregation
    - Development: Console output for human readability
    """
    if settings.app_env == "production":
        renderer_processors = [
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        renderer_processors = [structlog.dev.ConsoleRenderer()]

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            *renderer_processors,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, settings.log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
