"""
Unit tests for Pydantic Settings configuration.

Tests settings loading and validation.
"""

import pytest
from pydantic import ValidationError

from app.config.settings import Settings


def make_settings(**overrides) -> Settings:
    return Settings(_env_file=None, **overrides)


class TestSettings:
    """Tests for Settings configuration."""

    def test_settings_has_defaults(self):
        """Settings should have sensible defaults."""
        settings = make_settings(database_url=None, usage_backend=None)

        assert settings.environment in ("development", "production", "testing")
        assert settings.usage_backend == "memory"
        assert settings.expired_subscription_policy == "free_tier"
        assert settings.gemini_model is not None

    def test_database_url_selects_database_backend(self):
        settings = make_settings(database_url="postgresql://user:pw@db:5432/captions", usage_backend=None)

        assert settings.usage_backend == "database"
        assert settings.async_database_url == "postgresql+asyncpg://user:pw@db:5432/captions"

    def test_postgres_scheme_rewritten(self):
        settings = make_settings(database_url="postgres://u@h/db")

        assert settings.async_database_url == "postgresql+asyncpg://u@h/db"

    def test_database_backend_requires_url(self):
        with pytest.raises(ValidationError):
            make_settings(usage_backend="database", database_url=None)

    def test_production_requires_webhook_secret(self):
        with pytest.raises(ValidationError):
            make_settings(environment="production", whop_webhook_secret=None)

    def test_production_with_secret(self):
        settings = make_settings(environment="production", whop_webhook_secret="whsec")

        assert settings.is_production is True
        assert settings.is_development is False
        assert settings.webhook_verification_enabled is True

    def test_gemini_key_alias(self):
        settings = make_settings(google_api_key=None, gemini_api_key="gem-key")

        assert settings.google_api_key == "gem-key"

    def test_loads_from_environment(self, monkeypatch):
        monkeypatch.setenv("EXPIRED_SUBSCRIPTION_POLICY", "blocked")
        monkeypatch.setenv("CRON_SECRET", "from-env")

        settings = make_settings()

        assert settings.expired_subscription_policy == "blocked"
        assert settings.cron_secret == "from-env"

    def test_allowed_origins_includes_localhost(self):
        """allowed_origins should include localhost for development."""
        assert "http://localhost:3000" in make_settings().allowed_origins
