"""
Application Settings for Caption Crafter

Centralized configuration using Pydantic Settings with .env support.
All environment variables are validated at startup.
"""

from functools import lru_cache
from typing import Literal, Optional
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    USAGE_BACKEND controls where usage records live:
    - database: SQL database at DATABASE_URL (in-memory fallback during outages)
    - memory: process-local store only (default when DATABASE_URL is unset)
    """

    # Application Settings
    environment: Literal["development", "production", "testing"] = "development"
    debug: bool = False
    log_level: str = "INFO"

    # CORS Configuration
    allowed_origins: list[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    # Database Configuration (SQLModel/SQLAlchemy)
    database_url: Optional[str] = None
    usage_backend: Optional[Literal["database", "memory"]] = None
    database_pool_size: int = 5
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_echo: bool = False
    database_create_tables: bool = False

    # Whop Commerce Configuration
    whop_webhook_secret: Optional[str] = None
    whop_api_key: Optional[str] = None
    whop_api_base_url: str = "https://api.whop.com/api/v2"
    whop_sync_enabled: bool = True
    whop_request_timeout: float = 10.0

    # Google AI Configuration (accepts GOOGLE_API_KEY or GEMINI_API_KEY)
    google_api_key: Optional[str] = None
    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-2.0-flash"

    # Entitlement Policy
    # free_tier = lapsed subscriptions fall back to the free caption allowance
    # blocked = lapsed subscriptions cannot generate until renewed
    expired_subscription_policy: Literal["free_tier", "blocked"] = "free_tier"

    # Operational Secrets
    cron_secret: Optional[str] = None
    admin_api_key: Optional[str] = None

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @model_validator(mode="after")
    def validate_backends(self) -> "Settings":
        """Resolve the usage backend and check production secrets."""
        # Normalize gemini_api_key to google_api_key
        if not self.google_api_key and self.gemini_api_key:
            self.google_api_key = self.gemini_api_key

        if self.usage_backend is None:
            self.usage_backend = "database" if self.database_url else "memory"

        if self.usage_backend == "database" and not self.database_url:
            raise ValueError("DATABASE_URL required when USAGE_BACKEND=database")

        if self.environment == "production" and not self.whop_webhook_secret:
            raise ValueError(
                "WHOP_WEBHOOK_SECRET required in production; unsigned webhooks "
                "must never grant subscriptions"
            )

        return self

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.environment == "development"

    @property
    def webhook_verification_enabled(self) -> bool:
        """Webhook signatures are checked whenever a secret is configured."""
        return bool(self.whop_webhook_secret)

    @property
    def async_database_url(self) -> Optional[str]:
        """DATABASE_URL rewritten for the asyncpg driver."""
        url = self.database_url
        if not url:
            return None
        if url.startswith("postgresql://"):
            return url.replace("postgresql://", "postgresql+asyncpg://", 1)
        if url.startswith("postgres://"):
            return url.replace("postgres://", "postgresql+asyncpg://", 1)
        return url


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
