"""Application configuration using Pydantic BaseSettings."""

import logging
from enum import StrEnum

import structlog
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class StoreBackend(StrEnum):
    """Available persistence adapters for jobs and provider tokens."""

    IN_MEMORY = "in_memory"
    POSTGRES = "postgres"


KNOWN_STORAGE_BACKENDS = ("pinata", "s3", "data_url")


class Settings(BaseSettings):
    """Scheduler settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", populate_by_name=True
    )

    # Application Environment
    app_env: str = Field(default="development", alias="APP_ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Persistence
    store_backend: StoreBackend = Field(default=StoreBackend.IN_MEMORY, alias="STORE_BACKEND")
    database_url: str = Field(default="", alias="DATABASE_URL")
    db_pool_size: int = Field(default=50, alias="DB_POOL_SIZE")

    # Provider (Replicate predictions API)
    replicate_api_tokens: str = Field(default="", alias="REPLICATE_API_TOKENS")
    replicate_model_version: str = Field(
        default="black-forest-labs/flux-schnell", alias="REPLICATE_MODEL_VERSION"
    )
    start_timeout_seconds: float = Field(default=90.0, alias="START_TIMEOUT_SECONDS")
    poll_timeout_seconds: float = Field(default=30.0, alias="POLL_TIMEOUT_SECONDS")

    # Submission engine
    max_instant_retries: int = Field(default=10, alias="MAX_INSTANT_RETRIES")
    instant_retry_delay_seconds: float = Field(default=0.5, alias="INSTANT_RETRY_DELAY_SECONDS")

    # Completion poller
    poll_interval_seconds: float = Field(default=15.0, alias="POLL_INTERVAL_SECONDS")
    max_poll_attempts: int = Field(default=120, alias="MAX_POLL_ATTEMPTS")
    failover_after_attempts: int = Field(default=16, alias="FAILOVER_AFTER_ATTEMPTS")
    max_polling_retries: int = Field(default=10, alias="MAX_POLLING_RETRIES")
    max_content_safety_retries: int = Field(default=5, alias="MAX_CONTENT_SAFETY_RETRIES")
    poller_retention_seconds: float = Field(default=60.0, alias="POLLER_RETENTION_SECONDS")

    # Tenant queues and plan defaults
    default_batch_size: int = Field(default=10, alias="DEFAULT_BATCH_SIZE")
    default_batch_delay_seconds: float = Field(default=20.0, alias="DEFAULT_BATCH_DELAY_SECONDS")
    default_max_prompts_per_batch: int = Field(default=100, alias="DEFAULT_MAX_PROMPTS_PER_BATCH")
    tenant_plans: str = Field(default="", alias="TENANT_PLANS")
    max_processing_seconds: float = Field(default=7200.0, alias="MAX_PROCESSING_SECONDS")

    # Token health
    token_error_window_seconds: float = Field(default=1200.0, alias="TOKEN_ERROR_WINDOW_SECONDS")
    token_cooldown_error_threshold: int = Field(default=0, alias="TOKEN_COOLDOWN_ERROR_THRESHOLD")
    token_max_recent_errors: int = Field(default=0, alias="TOKEN_MAX_RECENT_ERRORS")
    token_max_requests: int = Field(default=0, alias="TOKEN_MAX_REQUESTS")

    # Storage fallback chain
    storage_backends: str = Field(default="pinata,s3", alias="STORAGE_BACKENDS")
    storage_upload_timeout_seconds: float = Field(
        default=120.0, alias="STORAGE_UPLOAD_TIMEOUT_SECONDS"
    )
    pinata_jwt: str = Field(default="", alias="PINATA_JWT")
    pinata_gateway: str = Field(default="gateway.pinata.cloud", alias="PINATA_GATEWAY")
    s3_bucket: str = Field(default="", alias="S3_BUCKET")
    s3_region: str = Field(default="us-east-1", alias="S3_REGION")
    s3_prefix: str = Field(default="generations", alias="S3_PREFIX")
    s3_public_base_url: str = Field(default="", alias="S3_PUBLIC_BASE_URL")

    # In-memory artifact cache (last resort)
    memory_cache_max_mb: int = Field(default=512, alias="MEMORY_CACHE_MAX_MB")
    memory_cache_max_item_mb: int = Field(default=75, alias="MEMORY_CACHE_MAX_ITEM_MB")
    memory_cache_ttl_seconds: float = Field(default=1800.0, alias="MEMORY_CACHE_TTL_SECONDS")

    # Reconciliation sweep
    reconciliation_interval_seconds: float = Field(
        default=60.0, alias="RECONCILIATION_INTERVAL_SECONDS"
    )
    job_stale_after_seconds: float = Field(default=1800.0, alias="JOB_STALE_AFTER_SECONDS")

    @property
    def storage_backend_list(self) -> list[str]:
        """Parse ordered storage backend names from comma-separated string."""
        return [name.strip().lower() for name in self.storage_backends.split(",") if name.strip()]

    @property
    def replicate_api_token_list(self) -> list[str]:
        """Parse provider credentials from comma-separated string."""
        return [token.strip() for token in self.replicate_api_tokens.split(",") if token.strip()]

    @property
    def tenant_plan_map(self) -> dict[str, str]:
        """Parse "tenant:plan" pairs from comma-separated string."""
        plans: dict[str, str] = {}
        for pair in self.tenant_plans.split(","):
            if ":" not in pair:
                continue
            tenant_id, plan = pair.split(":", 1)
            if tenant_id.strip() and plan.strip():
                plans[tenant_id.strip()] = plan.strip().lower()
        return plans

    @model_validator(mode="after")
    def validate_required_config(self) -> "Settings":
        """Validate required configuration on startup.

        Fails fast with clear error messages when a configured backend is missing
        its credentials. Validation is skipped in test environments.
        """
        unknown = [b for b in self.storage_backend_list if b not in KNOWN_STORAGE_BACKENDS]
        if unknown:
            raise ValueError(
                f"Unknown STORAGE_BACKENDS entries: {', '.join(unknown)}. "
                f"Supported: {', '.join(KNOWN_STORAGE_BACKENDS)}"
            )

        if self.app_env in ("test", "testing"):
            return self

        missing = []

        if self.store_backend == StoreBackend.POSTGRES and not self.database_url:
            missing.append("DATABASE_URL: required when STORE_BACKEND=postgres")

        if "pinata" in self.storage_backend_list and not self.pinata_jwt:
            missing.append("PINATA_JWT: Get your JWT token from https://pinata.cloud")

        if "s3" in self.storage_backend_list and not self.s3_bucket:
            missing.append("S3_BUCKET: Bucket that receives generated artifacts")

        if missing:
            error_msg = "CRITICAL: Missing required environment variables:\n\n" + "\n".join(
                f"  - {m}" for m in missing
            )
            error_msg += "\n\nThe scheduler cannot start without these variables."
            raise ValueError(error_msg)

        return self


def configure_logging(settings: Settings) -> None:
    """Configure structlog based on application environment.

    - Production: JSON output for log aggregation
    - Everything else: console output for human readability
    """
    shared_processors = [
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if settings.app_env == "production":
        processors = shared_processors + [
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [structlog.dev.ConsoleRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, settings.log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
