"""
Service Container

Builds the usage backend and the services layered on it exactly once,
at application startup. Routers receive these instances through FastAPI
dependencies; tests build their own container around fresh stores.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from app.config.settings import Settings
from app.domain.entitlements import ExpiryPolicy
from app.domain.usage import UsageSource, UsageStore
from app.infrastructure.ai.caption_generator import CaptionGenerator
from app.infrastructure.db import DatabaseManager, SqlUsageStore
from app.infrastructure.fallback_counter import FallbackCounter
from app.infrastructure.payments import WhopService
from app.infrastructure.services.generation_gate import GenerationGate
from app.infrastructure.services.subscription_reconciler import SubscriptionReconciler
from app.infrastructure.services.usage_service import UsageService


logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    """Everything a request handler may need, wired together."""
    settings: Settings
    usage: UsageService
    reconciler: SubscriptionReconciler
    gate: GenerationGate
    whop: WhopService
    generator: CaptionGenerator
    database: Optional[DatabaseManager] = None

    @classmethod
    def build(
        cls,
        settings: Settings,
        store: Optional[UsageStore] = None,
        generator: Optional[CaptionGenerator] = None,
        whop: Optional[WhopService] = None,
    ) -> "ServiceContainer":
        """
        Wire services from settings.

        Args:
            settings: Application settings
            store: Usage store to use instead of the configured backend
            generator: Caption generator override
            whop: Whop client override
        """
        database: Optional[DatabaseManager] = None
        fallback = FallbackCounter()

        if store is None:
            if settings.usage_backend == "database":
                database = DatabaseManager.from_settings(settings)
                store = SqlUsageStore(database)
                logger.info("Usage backend: database (in-memory fallback during outages)")
            else:
                store = FallbackCounter(source=UsageSource.PERSISTENT)
                logger.warning("Usage backend: memory; usage is lost on restart")

        usage = UsageService(
            store,
            fallback,
            expiry_policy=ExpiryPolicy(settings.expired_subscription_policy),
        )
        whop = whop or WhopService.from_settings(settings)
        generator = generator or CaptionGenerator.from_settings(settings)

        return cls(
            settings=settings,
            usage=usage,
            reconciler=SubscriptionReconciler(usage, whop),
            gate=GenerationGate(usage, generator),
            whop=whop,
            generator=generator,
            database=database,
        )

    async def startup(self) -> None:
        if self.database is not None and self.settings.database_create_tables:
            await self.database.create_tables()
            logger.info("Usage tables created")

    async def shutdown(self) -> None:
        if self.database is not None:
            await self.database.close()
            logger.info("Database connection pool closed")
