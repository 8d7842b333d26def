"""
Forum Analytics Engine
Centralized Configuration Management

This module provides configuration management using Pydantic settings with
environment variable support, validation, and type safety.
"""

from functools import lru_cache
from typing import Optional, List
from pydantic import Field, field_validator, model_validator, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """PostgreSQL Database Configuration"""

    model_config = SettingsConfigDict(env_prefix="POSTGRES_")

    host: str = Field(default="localhost", description="Database host")
    port: int = Field(default=5432, description="Database port")
    db: str = Field(default="forum_analytics", alias="database", description="Database name")
    user: str = Field(default="analytics", description="Database user")
    password: SecretStr = Field(default="secure_password", description="Database password")
    pool_size: int = Field(default=20, description="Connection pool size")
    max_overflow: int = Field(default=10, description="Max overflow connections")
    pool_timeout: int = Field(default=30, description="Pool timeout in seconds")
    echo: bool = Field(default=False, description="Echo SQL queries")
    url: Optional[str] = Field(default=None, alias="DATABASE_URL", description="Full async URL (overrides host/port)")

    @property
    def async_url(self) -> str:
        """Async database URL for asyncpg, or DATABASE_URL when set"""
        if self.url:
            return self.url
        return f"postgresql+asyncpg://{self.user}:{self.password.get_secret_value()}@{self.host}:{self.port}/{self.db}"

    @property
    def sync_url(self) -> str:
        """Sync database URL for psycopg2 (used by Alembic)"""
        return f"postgresql+psycopg2://{self.user}:{self.password.get_secret_value()}@{self.host}:{self.port}/{self.db}"


class RedisSettings(BaseSettings):
    """Redis Cache Configuration"""

    model_config = SettingsConfigDict(env_prefix="REDIS_")

    host: str = Field(default="localhost", description="Redis host")
    port: int = Field(default=6379, description="Redis port")
    password: Optional[SecretStr] = Field(default=None, description="Redis password")
    db: int = Field(default=0, description="Redis database number")
    max_connections: int = Field(default=100, description="Max connections")
    socket_timeout: int = Field(default=5, description="Socket timeout in seconds")
    decode_responses: bool = Field(default=True, description="Decode responses to strings")
    url: Optional[str] = Field(default=None, alias="REDIS_URL", description="Redis URL (overrides host/port)")

    def get_url(self) -> str:
        """Redis connection URL - uses REDIS_URL if set, otherwise builds from host/port"""
        if self.url:
            return self.url
        if self.password:
            return f"redis://:{self.password.get_secret_value()}@{self.host}:{self.port}/{self.db}"
        return f"redis://{self.host}:{self.port}/{self.db}"


class IngestionSettings(BaseSettings):
    """Event ingestion and rollup configuration"""

    model_config = SettingsConfigDict(env_prefix="INGEST_")

    aggregate_inline: bool = Field(default=True, description="Aggregate within the request instead of a background task")
    aggregation_max_attempts: int = Field(default=5, description="Attempts for a conflicting increment")
    aggregation_backoff_ms: int = Field(default=25, description="Base backoff between increment attempts")

    # Outbox for raw writes that hit a storage outage
    outbox_max_size: int = Field(default=10000, description="Bounded outbox capacity")
    outbox_backoff_initial_seconds: float = Field(default=0.5, description="First retry delay")
    outbox_backoff_max_seconds: float = Field(default=60.0, description="Retry delay ceiling")

    # Envelope limits
    max_extra_keys: int = Field(default=20, description="Max keys kept in an event's extra map")
    max_text_length: int = Field(default=255, description="Max length of short text fields")


class SessionSettings(BaseSettings):
    """Session heartbeat, expiry and funnel progress configuration"""

    model_config = SettingsConfigDict(env_prefix="SESSION_")

    heartbeat_interval_seconds: float = Field(default=30.0, description="Client heartbeat period")
    expiry_timeout_seconds: int = Field(default=1800, description="Idle time before a session is finalized")
    sweep_interval_seconds: int = Field(default=300, description="In-process sweep period")
    sweep_batch_size: int = Field(default=500, description="Sessions finalized per sweep pass")
    sweep_in_process: bool = Field(default=False, description="Run the expiry sweep inside the API process")

    funnel_progress_backend: str = Field(
        default="database",
        description="Funnel progress store: database, redis, or memory (single worker only)",
    )
    funnel_progress_ttl_seconds: int = Field(default=86400, description="Lifetime of per-session funnel progress")

    @field_validator("funnel_progress_backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        """Validate funnel progress backend"""
        allowed = ["database", "redis", "memory"]
        if v.lower() not in allowed:
            raise ValueError(f"Funnel progress backend must be one of: {allowed}")
        return v.lower()


class CaptureSettings(BaseSettings):
    """Capture client defaults"""

    model_config = SettingsConfigDict(env_prefix="CAPTURE_")

    base_url: str = Field(default="http://localhost:8000/api", description="Ingestion API base URL")
    timeout_seconds: float = Field(default=5.0, description="Per-request timeout")
    seen_before_path: Optional[str] = Field(default=None, description="File persisting the seen-before flag")


class SecuritySettings(BaseSettings):
    """Security Configuration"""

    model_config = SettingsConfigDict(env_prefix="")

    secret_key: SecretStr = Field(default="change-me-in-production", description="Application secret key")

    # Rate limiting
    rate_limit_requests: int = Field(default=600, alias="RATE_LIMIT_REQUESTS", description="Rate limit requests")
    rate_limit_window_seconds: int = Field(default=60, alias="RATE_LIMIT_WINDOW_SECONDS", description="Rate limit window")

    # CORS
    cors_origins: List[str] = Field(
        default=["*"],
        description="Allowed CORS origins"
    )


class MonitoringSettings(BaseSettings):
    """Monitoring and Observability Configuration"""

    model_config = SettingsConfigDict(env_prefix="")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL", description="Logging level")
    log_format: str = Field(default="json", description="Log format: json or text")

    enable_metrics: bool = Field(default=True, alias="ENABLE_METRICS", description="Expose /metrics")


class Settings(BaseSettings):
    """
    Main Application Settings

    Aggregates all configuration sections and provides a single entry point
    for accessing application configuration.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="forum-analytics", alias="APP_NAME", description="Application name")
    app_env: str = Field(default="development", alias="APP_ENV", description="Environment")
    debug: bool = Field(default=False, alias="DEBUG", description="Debug mode")

    # API Server
    api_host: str = Field(default="0.0.0.0", alias="API_HOST", description="API host")
    api_port: int = Field(default=8000, alias="API_PORT", description="API port")
    api_workers: int = Field(default=4, alias="API_WORKERS", description="API workers")
    api_reload: bool = Field(default=False, alias="API_RELOAD", description="Enable reload")

    # Version
    version: str = Field(default="1.0.0", description="Application version")

    # Subsystem configurations
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    ingestion: IngestionSettings = Field(default_factory=IngestionSettings)
    sessions: SessionSettings = Field(default_factory=SessionSettings)
    capture: CaptureSettings = Field(default_factory=CaptureSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)

    @field_validator("app_env")
    @classmethod
    def validate_env(cls, v: str) -> str:
        """Validate environment value"""
        allowed = ["development", "staging", "production", "testing"]
        if v.lower() not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v.lower()

    @model_validator(mode="after")
    def validate_funnel_progress_workers(self) -> "Settings":
        """Process-local funnel progress cannot be shared between API workers"""
        if self.sessions.funnel_progress_backend == "memory" and self.api_workers > 1:
            raise ValueError(
                "SESSION_FUNNEL_PROGRESS_BACKEND=memory requires API_WORKERS=1; "
                "use the database or redis backend with more workers"
            )
        return self

    @property
    def is_production(self) -> bool:
        """Check if running in production"""
        return self.app_env == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development"""
        return self.app_env == "development"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached application settings.

    Uses LRU cache to ensure settings are only loaded once.

    Returns:
        Settings: Application settings instance
    """
    return Settings()


# Convenience function for accessing settings
settings = get_settings()
