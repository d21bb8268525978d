"""
Application configuration using pydantic-settings.
All config is validated at startup - fail fast if anything is missing.
"""
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # Application
    app_env: str = "development"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    app_base_url: str = "http://localhost:8000"
    log_level: str = "INFO"

    # Database
    database_url: str = "postgresql+asyncpg://localhost:5432/eventrelay"
    database_pool_size: int = 20
    database_max_overflow: int = 10

    # Redis (worker heartbeats, optional shared rate-limit counters)
    redis_url: str = "redis://localhost:6379/0"

    # Encryption of signing secrets at rest (Fernet key)
    encryption_key: str = ""

    # Sentry
    sentry_dsn: str = ""

    # Service-to-service key for internal routes (dispatch, worker trigger, endpoint management)
    internal_api_key: str = ""
    allowed_origins: str = ""  # Comma-separated CORS origins for management routes

    # Ingestion tokens
    token_origin_policy: str = "warn"  # warn | enforce
    demo_landing_key_enabled: bool = True

    # Rate limiting
    rate_limit_backend: str = "memory"  # memory | redis
    ingest_rate_limit: int = 100
    ingest_rate_window_ms: int = 60000
    ingest_burst_size: int = 10
    ingest_burst_window_ms: int = 1000
    ip_base_limit: int = 200

    # Downstream enrichment (profile processor)
    enrichment_url: str = ""
    enrichment_timeout_seconds: float = 5.0

    # Webhook delivery
    webhook_worker_enabled: bool = True
    webhook_poll_interval_seconds: int = 30
    webhook_batch_size: int = 50
    webhook_timeout_seconds: float = 10.0
    webhook_max_concurrency: int = 10
    webhook_incall_retries: int = 3
    webhook_max_retries: int = 5
    webhook_backoff_base_seconds: float = 1.0
    webhook_backoff_cap_seconds: float = 30.0
    webhook_failure_threshold: int = 10
    delivery_retention_days: int = 30

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
