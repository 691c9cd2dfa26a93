"""
Test configuration and fixtures for Caption Crafter.

Provides shared fixtures for unit and API tests. Every test gets fresh
stores; nothing is shared through module-level state.
"""

import hashlib
import hmac
import json
import pytest
from datetime import datetime, timezone
from typing import AsyncGenerator

from fastapi.testclient import TestClient

from app.config.settings import Settings
from app.domain.usage import UsageSource
from app.infrastructure.ai.caption_generator import CaptionGenerator
from app.infrastructure.container import ServiceContainer
from app.infrastructure.db import DatabaseManager, SqlUsageStore
from app.infrastructure.fallback_counter import FallbackCounter
from app.infrastructure.payments import WhopService
from app.infrastructure.services.usage_service import UsageService


NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

ADMIN_KEY = "admin-test-key"
CRON_SECRET = "cron-test-secret"
WEBHOOK_SECRET = "whsec_test_secret"


# =============================================================================
# Settings Fixtures
# =============================================================================

@pytest.fixture
def settings() -> Settings:
    """Testing settings with every secret configured and no database."""
    return Settings(
        _env_file=None,
        environment="testing",
        usage_backend="memory",
        database_url=None,
        admin_api_key=ADMIN_KEY,
        cron_secret=CRON_SECRET,
        whop_webhook_secret=WEBHOOK_SECRET,
        whop_api_key=None,
        google_api_key=None,
        gemini_api_key=None,
    )


# =============================================================================
# Store Fixtures
# =============================================================================

@pytest.fixture
def clock():
    """Fixed clock for deterministic billing dates."""
    return lambda: NOW


@pytest.fixture
def memory_store() -> FallbackCounter:
    """In-memory store standing in as the persistent backend."""
    return FallbackCounter(source=UsageSource.PERSISTENT)


@pytest.fixture
def fallback() -> FallbackCounter:
    return FallbackCounter()


@pytest.fixture
def usage_service(memory_store, fallback, clock) -> UsageService:
    return UsageService(memory_store, fallback, clock=clock)


@pytest.fixture
async def db_manager(tmp_path) -> AsyncGenerator[DatabaseManager, None]:
    """SQLite database file with the usage tables created."""
    db = DatabaseManager(
        f"sqlite+aiosqlite:///{tmp_path / 'usage.db'}",
        engine_options={"connect_args": {"timeout": 30}},
    )
    await db.create_tables()
    yield db
    await db.close()


@pytest.fixture
def sql_store(db_manager) -> SqlUsageStore:
    return SqlUsageStore(db_manager)


@pytest.fixture
async def unreachable_store(tmp_path) -> AsyncGenerator[SqlUsageStore, None]:
    """SQL store whose database file can never be opened."""
    db = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'dir' / 'usage.db'}")
    yield SqlUsageStore(db)
    await db.close()


# =============================================================================
# App Fixtures
# =============================================================================

@pytest.fixture
def caption_generator() -> CaptionGenerator:
    """Template-only generator (no API key)."""
    return CaptionGenerator()


@pytest.fixture
def container(settings, memory_store, caption_generator) -> ServiceContainer:
    return ServiceContainer.build(
        settings,
        store=memory_store,
        generator=caption_generator,
        whop=WhopService(webhook_secret=WEBHOOK_SECRET),
    )


@pytest.fixture
def app(settings, container):
    """FastAPI application wired to fresh in-memory services."""
    from app.main import create_app
    return create_app(settings, container)


@pytest.fixture
def client(app):
    """Synchronous test client (runs the lifespan)."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def admin_headers():
    return {"X-Admin-Key": ADMIN_KEY}


@pytest.fixture
def cron_headers():
    return {"Authorization": f"Bearer {CRON_SECRET}"}


# =============================================================================
# Sample Data Fixtures
# =============================================================================

@pytest.fixture
def sample_generate_request():
    """Sample caption generation request body."""
    return {
        "user_id": 42,
        "platform": "Instagram",
        "topic": "morning coffee rituals",
        "tone": "Friendly",
        "length": "short",
        "num_variants": 2,
        "include_emojis": True,
    }


@pytest.fixture
def post_webhook(client):
    """POST a Whop webhook body, signed with the test secret unless told otherwise."""
    def _post(payload, signature=None, secret=WEBHOOK_SECRET):
        body = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
        headers = {"Content-Type": "application/json"}
        if signature is None:
            signature = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
        if signature:
            headers["X-Whop-Signature"] = signature
        return client.post("/api/webhooks/whop", content=body, headers=headers)
    return _post
