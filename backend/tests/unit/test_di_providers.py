"""
Unit tests for the service container and dependency providers.

Validates that:
- The usage backend is selected from settings
- Dependency providers hand out the container's instances
- Requests before startup get 503 instead of a half-built service
"""

import logging
import pytest
from types import SimpleNamespace
from fastapi import HTTPException
from fastapi.testclient import TestClient

from app.api import dependencies
from app.config.settings import Settings
from app.domain.entitlements import ExpiryPolicy
from app.domain.usage import UsageSource
from app.infrastructure.container import ServiceContainer
from app.infrastructure.db import SqlUsageStore
from app.infrastructure.fallback_counter import FallbackCounter
from app.main import create_app


def make_settings(**overrides) -> Settings:
    return Settings(_env_file=None, **overrides)


class TestServiceContainer:
    """Tests for ServiceContainer.build."""

    def test_memory_backend(self):
        container = ServiceContainer.build(make_settings(usage_backend="memory", database_url=None))

        assert isinstance(container.usage.store, FallbackCounter)
        assert container.usage.store.source == UsageSource.PERSISTENT
        assert container.database is None

    @pytest.mark.asyncio
    async def test_database_backend(self, tmp_path):
        settings = make_settings(database_url=f"sqlite+aiosqlite:///{tmp_path / 'usage.db'}")

        container = ServiceContainer.build(settings)

        assert settings.usage_backend == "database"
        assert isinstance(container.usage.store, SqlUsageStore)
        assert container.database is not None
        await container.shutdown()

    def test_fallback_is_separate_from_store(self):
        container = ServiceContainer.build(make_settings(usage_backend="memory", database_url=None))

        assert container.usage.fallback is not container.usage.store
        assert container.usage.fallback.source == UsageSource.FALLBACK

    def test_expiry_policy_from_settings(self):
        container = ServiceContainer.build(
            make_settings(usage_backend="memory", database_url=None, expired_subscription_policy="blocked")
        )

        assert container.usage._expiry_policy == ExpiryPolicy.BLOCKED

    def test_services_share_usage_service(self, container):
        assert container.reconciler._usage is container.usage
        assert container.gate._usage is container.usage
        assert container.gate._generator is container.generator


class TestDependencyProviders:
    """Providers read from the container on app.state."""

    def make_request(self, container):
        return SimpleNamespace(app=SimpleNamespace(state=SimpleNamespace(container=container)))

    def test_get_container(self, container):
        assert dependencies.get_container(self.make_request(container)) is container

    def test_missing_container_is_503(self):
        with pytest.raises(HTTPException) as exc_info:
            dependencies.get_container(self.make_request(None))

        assert exc_info.value.status_code == 503

    def test_service_providers(self, container):
        assert dependencies.get_app_settings(container) is container.settings
        assert dependencies.get_usage_service(container) is container.usage
        assert dependencies.get_generation_gate(container) is container.gate
        assert dependencies.get_reconciler(container) is container.reconciler
        assert dependencies.get_whop_service(container) is container.whop

    def test_lifespan_builds_container(self, settings):
        app = create_app(settings)
        assert app.state.container is None

        with TestClient(app) as client:
            assert isinstance(app.state.container, ServiceContainer)
            assert client.get("/api/usage/5").status_code == 200

    def test_startup_warns_without_webhook_secret(self, settings, caplog):
        app = create_app(settings.model_copy(update={"whop_webhook_secret": None}))

        with caplog.at_level(logging.WARNING, logger="app.main"), TestClient(app):
            pass

        assert "signatures will not be verified" in caplog.text

    def test_startup_quiet_with_webhook_secret(self, settings, caplog):
        with caplog.at_level(logging.WARNING, logger="app.main"), TestClient(create_app(settings)):
            pass

        assert "signatures will not be verified" not in caplog.text


class TestOperationalSecrets:

    def test_unconfigured_admin_key_is_503(self, settings, container):
        app = create_app(settings, container)
        app.dependency_overrides[dependencies.get_app_settings] = (
            lambda: settings.model_copy(update={"admin_api_key": None})
        )

        with TestClient(app) as client:
            response = client.post("/api/usage/1/reset", headers={"X-Admin-Key": "anything"})

        assert response.status_code == 503

    def test_unconfigured_cron_secret_is_503(self, settings, container):
        app = create_app(settings, container)
        app.dependency_overrides[dependencies.get_app_settings] = (
            lambda: settings.model_copy(update={"cron_secret": None})
        )

        with TestClient(app) as client:
            response = client.get(
                "/api/cron/subscription-expiry", headers={"Authorization": "Bearer x"}
            )

        assert response.status_code == 503
