"""
API Dependencies

FastAPI dependency injection for services and operational secrets.

Services come from the ServiceContainer stored on ``app.state`` during
startup, so tests can install a container built around fresh stores.
"""

import logging
import secrets
from typing import Annotated, Optional

from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.config.settings import Settings
from app.infrastructure.container import ServiceContainer
from app.infrastructure.payments import WhopService
from app.infrastructure.services.generation_gate import GenerationGate
from app.infrastructure.services.subscription_reconciler import SubscriptionReconciler
from app.infrastructure.services.usage_service import UsageService


logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


# =============================================================================
# Service Providers
# =============================================================================

def get_container(request: Request) -> ServiceContainer:
    container: Optional[ServiceContainer] = getattr(request.app.state, "container", None)
    if container is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service is starting up",
        )
    return container


ContainerDep = Annotated[ServiceContainer, Depends(get_container)]


def get_app_settings(container: ContainerDep) -> Settings:
    return container.settings


def get_usage_service(container: ContainerDep) -> UsageService:
    return container.usage


def get_generation_gate(container: ContainerDep) -> GenerationGate:
    return container.gate


def get_reconciler(container: ContainerDep) -> SubscriptionReconciler:
    return container.reconciler


def get_whop_service(container: ContainerDep) -> WhopService:
    return container.whop


SettingsDep = Annotated[Settings, Depends(get_app_settings)]
UsageServiceDep = Annotated[UsageService, Depends(get_usage_service)]
GenerationGateDep = Annotated[GenerationGate, Depends(get_generation_gate)]
ReconcilerDep = Annotated[SubscriptionReconciler, Depends(get_reconciler)]
WhopServiceDep = Annotated[WhopService, Depends(get_whop_service)]


# =============================================================================
# Operational Secrets
# =============================================================================

async def verify_admin_api_key(
    settings: SettingsDep,
    x_admin_key: str = Header(..., description="Admin API key for protected operations"),
) -> bool:
    """
    Verify admin API key from header.

    The admin key is set in environment variable ADMIN_API_KEY.
    """
    expected_key = settings.admin_api_key

    if not expected_key:
        logger.error("ADMIN_API_KEY environment variable not set")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin authentication not configured",
        )

    # Use secrets.compare_digest for timing-attack resistance
    if not secrets.compare_digest(x_admin_key, expected_key):
        logger.warning("Invalid admin API key attempt")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin API key",
        )

    return True


async def verify_cron_secret(
    settings: SettingsDep,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> bool:
    """Verify ``Authorization: Bearer <CRON_SECRET>`` on scheduled jobs."""
    expected = settings.cron_secret

    if not expected:
        logger.error("CRON_SECRET environment variable not set")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Cron authentication not configured",
        )

    if not credentials or not secrets.compare_digest(credentials.credentials, expected):
        logger.warning("Rejected cron request with missing or invalid secret")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return True
