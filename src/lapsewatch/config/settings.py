"""
Application settings using Pydantic.

Provides environment-based configuration loading with LAPSEWATCH_ prefix.
"""

from datetime import timedelta
from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings."""

    # Database
    database_url: str = "postgresql+psycopg://localhost/lapsewatch"
    db_pool_size: int = 5
    db_max_overflow: int = 10
    db_pool_timeout: int = 30
    db_pool_recycle: int = 1800

    # Debug
    debug: bool = False

    # Environment
    environment: str = "development"

    # API
    api_prefix: str = "/api/v1"
    cors_origins: list[str] = []

    # Record source (Salesforce REST query API; token acquisition happens elsewhere)
    record_source_backend: str = "salesforce"  # salesforce, memory
    salesforce_instance_url: str | None = None
    salesforce_access_token: str | None = None
    salesforce_api_version: str = "v59.0"
    record_name_prefix: str = "PS-"
    source_page_size: int = 200
    source_max_pages_per_run: int = 25

    # Capture
    capture_lookback_days: int = 30
    capture_overlap_minutes: int = 15
    capture_concurrency: int = 8

    # Analysis
    expiration_window_days: int = 30
    at_risk_days: int = 7
    extension_match_attributes: list[str] = []
    analysis_concurrency: int = 8

    # Scheduling
    scheduler_enabled: bool = False
    scheduler_interval_seconds: int = 300
    run_soft_timeout_seconds: int = 240
    # A run still marked running after this long is treated as abandoned.
    run_stale_after_seconds: int = 900

    # HTTP client settings
    http_timeout: int = 30
    http_max_retries: int = 3
    http_retry_backoff_factor: float = 0.5

    # Persistence
    persistence_retry_backoff_seconds: float = 0.2

    @property
    def expiration_window(self) -> timedelta:
        return timedelta(days=self.expiration_window_days)

    @property
    def run_stale_after(self) -> timedelta:
        return timedelta(seconds=self.run_stale_after_seconds)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        env_prefix = "LAPSEWATCH_"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
