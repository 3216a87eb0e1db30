"""Configuration management using Pydantic Settings."""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Service Configuration
    service_host: str = Field(default="0.0.0.0", description="Service host")
    service_port: int = Field(default=8000, description="Service port")
    log_level: str = Field(default="INFO", description="Logging level")

    # Database
    database_url: Optional[str] = Field(
        default=None, description="PostgreSQL connection URL"
    )
    db_pool_min_size: int = Field(default=1, description="Minimum connection pool size")
    db_pool_max_size: int = Field(default=20, description="Maximum connection pool size")
    db_ssl: bool = Field(default=False, description="Require SSL for database connections")

    # Credential encryption (AES-256-GCM, 32 bytes hex encoded)
    credential_encryption_key: Optional[str] = Field(
        default=None,
        description="64 hex chars. Required to store or read platform credentials",
    )

    # Advertising platform API
    platform_base_url: str = Field(
        default="https://graph.facebook.com", description="Platform API base URL"
    )
    platform_api_version: str = Field(default="v19.0", description="Platform API version")
    platform_timeout_s: float = Field(
        default=30.0, description="Platform API request timeout in seconds"
    )
    platform_entity_limit: int = Field(
        default=5000, description="Maximum campaigns per ad account"
    )
    platform_entity_limit_warning_ratio: float = Field(
        default=0.9,
        ge=0.0,
        le=1.0,
        description="Warn in preflight when account usage reaches this share of the limit",
    )

    # Job execution
    job_retry_budget: int = Field(
        default=5, ge=1, description="Maximum automatic retry passes per job"
    )
    job_max_parallel_attempts: int = Field(
        default=5, ge=1, description="Concurrent slot attempts per job"
    )
    job_retry_base_delay_s: float = Field(
        default=1.0, description="Base delay between retry passes"
    )
    job_retry_max_delay_s: float = Field(
        default=60.0, description="Cap on the delay between retry passes"
    )
    failure_retry_ceiling: int = Field(
        default=3,
        description="Failure records become permanent once retry_count exceeds this",
    )
    rollback_settle_timeout_s: float = Field(
        default=30.0,
        ge=0.0,
        description="How long rollback waits for in-flight create calls to settle",
    )

    # Rate-limit governor
    rate_limit_soft_threshold_pct: float = Field(
        default=80.0, description="Usage percentage at which new attempts are deferred"
    )
    rate_limit_hard_ceiling_pct: float = Field(
        default=100.0, description="Usage percentage at which all attempts are blocked"
    )
    rate_limit_default_calls_allowed: int = Field(
        default=200, description="Calls allowed per window when the platform omits it"
    )
    rate_limit_default_window_s: int = Field(
        default=3600, description="Window length when the platform omits a reset time"
    )

    # Deferred operation queue
    queue_worker_enabled: bool = Field(
        default=True, description="Run the deferred operation worker in-process"
    )
    queue_max_attempts: int = Field(default=3, description="Max attempts per deferred op")
    queue_backoff_base_s: int = Field(
        default=900, description="Deferred op retry backoff base (2^attempts * base)"
    )
    queue_defer_delay_s: int = Field(
        default=3600,
        description="Delay for deferred ops when the window has no reset time",
    )
    queue_poll_interval_s: float = Field(
        default=5.0, description="Worker sleep when no operation is ready"
    )
    queue_batch_size: int = Field(default=10, description="Operations claimed per poll")
    queue_default_priority: int = Field(
        default=5, description="Lower priorities are processed first"
    )

    # Rate limiting (inbound HTTP)
    rate_limit_enabled: bool = Field(default=True, description="Enable rate limiting")
    rate_limit_requests_per_minute: int = Field(
        default=60, description="Maximum requests per minute per IP"
    )

    # Request size limits
    max_request_body_size: int = Field(
        default=1 * 1024 * 1024, description="Maximum request body size in bytes"
    )

    # API Key Authentication
    api_key: Optional[str] = Field(
        default=None,
        description="Optional API key. If set, all requests must include X-API-Key header",
    )
    api_key_header_name: str = Field(default="X-API-Key", description="Header name for API key")

    # Docs
    docs_enabled: bool = Field(default=True, description="Serve /docs and /openapi.json")

    # Sentry Observability
    sentry_dsn: Optional[str] = Field(
        default=None,
        description="Sentry DSN for error tracking and performance monitoring",
    )
    sentry_environment: str = Field(
        default="development",
        description="Sentry environment tag (development, staging, production)",
    )
    sentry_traces_sample_rate: float = Field(
        default=0.1,
        ge=0.0,
        le=1.0,
        description="Sentry performance tracing sample rate (0.0-1.0)",
    )
    sentry_profiles_sample_rate: float = Field(
        default=0.1,
        ge=0.0,
        le=1.0,
        description="Sentry profiling sample rate (0.0-1.0)",
    )

    @property
    def platform_api_url(self) -> str:
        """Versioned platform API root."""
        return f"{self.platform_base_url.rstrip('/')}/{self.platform_api_version}"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
