"""
Application configuration using pydantic-settings.
Loads from environment variables / .env file.
"""

from functools import lru_cache
from typing import List, Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Application
    app_name: str = "course-payments"
    app_env: Literal["development", "staging", "production"] = "development"
    debug: bool = False

    # API Server
    host: str = "0.0.0.0"
    port: int = 8000
    cors_origins: List[str] = []

    # Postgres (asyncpg URL)
    database_url: str = ""

    # Redis (enrollment cache)
    redis_url: str = ""

    # Shared key presented by the session proxy in front of this service
    session_proxy_key: str = ""

    # Paymob
    paymob_base_url: str = "https://accept.paymob.com/api"
    paymob_api_key: str = ""
    paymob_hmac_secret: str = ""
    paymob_integration_id_card: str = ""
    paymob_integration_id_wallet: str = ""
    paymob_iframe_id: str = ""
    paymob_timeout_seconds: float = 15.0
    paymob_payment_key_expiration: int = 3600
    default_currency: str = "EGP"

    # Return flow polling
    pending_poll_window_seconds: int = 60
    poll_interval_ms: int = 3000

    # A newer PENDING payment for the same course blocks a second checkout
    pending_payment_block_seconds: int = 3600

    # Enrollment cache
    enrollment_cache_ttl_seconds: int = 300

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
