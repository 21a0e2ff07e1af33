"""
Application configuration using pydantic-settings.
Loads from environment variables / .env file.
"""

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "funnelflow"
    app_env: Literal["development", "staging", "production"] = "development"
    debug: bool = False

    # API Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Empty means INFO in production, DEBUG elsewhere
    log_level: str = ""

    # Postgres
    database_url: str = ""
    db_pool_size: int = 5
    db_max_overflow: int = 10

    # Redis
    redis_url: str = "redis://localhost:6379/0"
    realtime_channel: str = "funnelflow:events"

    # OpenAI
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    ai_max_repair_tries: int = 3
    ai_retry_base_delay: float = 1.0

    # Whop
    whop_api_key: str = ""
    whop_api_base_url: str = "https://api.whop.com/api/v2"
    whop_webhook_secret: str = ""

    # Caches (seconds)
    user_context_ttl_seconds: int = 300
    analytics_cache_ttl_seconds: int = 300

    # Credits granted to an admin on a fresh install
    initial_admin_credits: int = 2

    # Admin
    admin_api_key: str = ""

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
