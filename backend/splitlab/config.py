"""Application configuration."""
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = "SplitLab"
    debug: bool = False

    # Database
    database_url: str = "sqlite:///./splitlab.db"

    # Redis
    redis_url: str = "redis://localhost:6379/0"

    # Internal endpoints (aggregation / retention runs triggered by cron)
    internal_api_token: str = "internal-token-change-in-production"

    # CORS
    frontend_url: str = "http://localhost:5173"

    # Cache TTLs (seconds) - best effort, never authoritative
    assignment_cache_ttl: int = 60
    winner_cache_ttl: int = 30

    # Aggregation
    aggregation_bucket_ms: int = 3600000  # 1 hour
    aggregation_window_hours: int = 6  # scheduled run lookback
    aggregation_default_lookback_hours: int = 24  # single experiment, no startedAt

    # Retention fallbacks when the settings table has no value
    events_retention_days: int = 30
    metrics_retention_days: int = 180

    # Webhooks
    webhook_timeout_seconds: float = 5.0
    webhook_max_workers: int = 4

    # Rate Limiting (requests per window, per client)
    rate_limit_window: int = 60  # seconds
    assignment_rate_limit: int = 600
    events_rate_limit: int = 1200
    winner_rate_limit: int = 600

    class Config:
        env_file = ".env"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
