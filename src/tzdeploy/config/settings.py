"""
Application settings using Pydantic.

Provides environment-based configuration loading with TZ_ prefix.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="TZ_",
        extra="ignore",
    )

    # Locking
    stale_lock_threshold_minutes: float = 30
    lock_timeout_minutes: float = 10

    # Apply safety
    prod_plan_freshness_minutes: float = 15

    # Run history
    run_history_retention_days: int = 30

    # OpenTofu runner
    opentofu_image: str = "ghcr.io/opentofu/opentofu:1.8.8"
    container_command: str = "docker"
    command_timeout_seconds: float | None = 3600

    # Report watch mode
    watch_interval_seconds: float = 5
    watch_max_cycles: int = 3

    # Logging
    log_level: str = "WARNING"
    log_json: bool = False


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance. Call ``get_settings.cache_clear()`` to reload."""
    return Settings()
