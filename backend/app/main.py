"""
Caption Crafter - FastAPI Application

Main entry point for the backend API.
Provides endpoints for caption usage, gated generation, Whop webhooks,
and the daily subscription expiry sweep.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.routes import captions, cron, plans, usage, webhooks
from app.config.settings import Settings, get_settings
from app.infrastructure.container import ServiceContainer
from app.infrastructure.exceptions import (
    AIServiceError,
    CaptionCrafterError,
    DatabaseError,
    NotFoundError,
    SignatureInvalid,
    ValidationError,
)


logger = logging.getLogger(__name__)

TRY_AGAIN_MESSAGE = "Something went wrong. Please try again."


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    settings: Settings = app.state.settings

    # Startup
    logger.info(f"Caption Crafter Backend starting in {settings.environment} mode...")

    if getattr(app.state, "container", None) is None:
        app.state.container = ServiceContainer.build(settings)
    container: ServiceContainer = app.state.container
    await container.startup()

    if not settings.webhook_verification_enabled:
        logger.warning("WHOP_WEBHOOK_SECRET not set, webhook signatures will not be verified")

    yield

    # Shutdown
    await container.shutdown()
    logger.info("Caption Crafter Backend shutting down...")


# ============================================================================
# Exception Handlers
# ============================================================================

async def validation_error_handler(request: Request, exc: ValidationError):
    """Handle validation errors."""
    return JSONResponse(status_code=400, content=exc.to_dict())


async def not_found_error_handler(request: Request, exc: NotFoundError):
    """Handle not found errors."""
    return JSONResponse(status_code=404, content=exc.to_dict())


async def signature_error_handler(request: Request, exc: SignatureInvalid):
    """Reject webhooks whose signature does not verify."""
    return JSONResponse(
        status_code=401,
        content={"error": "SignatureInvalid", "message": "Invalid webhook signature"},
    )


async def ai_service_error_handler(request: Request, exc: AIServiceError):
    """Generation failures are retryable; no credit was consumed."""
    logger.error(f"AI service error: {exc.message}")
    return JSONResponse(
        status_code=503,
        content={
            "error": "GenerationUnavailable",
            "message": "Caption generation is temporarily unavailable. Please try again.",
        },
    )


async def database_error_handler(request: Request, exc: DatabaseError):
    """Storage failures not recovered by the fallback counter."""
    logger.error(f"Database error during {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=503,
        content={"error": "ServiceUnavailable", "message": TRY_AGAIN_MESSAGE},
    )


async def general_error_handler(request: Request, exc: CaptionCrafterError):
    """Handle all other application errors without leaking internals."""
    logger.error(f"Unhandled {exc.__class__.__name__} during {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=500,
        content={"error": "InternalError", "message": TRY_AGAIN_MESSAGE},
    )


def create_app(
    settings: Optional[Settings] = None,
    container: Optional[ServiceContainer] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Settings to use (defaults to the cached environment settings)
        container: Pre-built services; built from settings at startup otherwise
    """
    settings = settings or get_settings()
    configure_logging(settings)

    app = FastAPI(
        title="Caption Crafter",
        description="Caption usage metering, subscription entitlements and gated generation",
        version="1.0.0",
        lifespan=lifespan,
        debug=settings.debug,
    )
    app.state.settings = settings
    app.state.container = container

    # CORS configuration from Settings
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(ValidationError, validation_error_handler)
    app.add_exception_handler(NotFoundError, not_found_error_handler)
    app.add_exception_handler(SignatureInvalid, signature_error_handler)
    app.add_exception_handler(AIServiceError, ai_service_error_handler)
    app.add_exception_handler(DatabaseError, database_error_handler)
    app.add_exception_handler(CaptionCrafterError, general_error_handler)

    # ========================================================================
    # Health Check
    # ========================================================================

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "service": "caption-crafter"}

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "message": "Caption Crafter API",
            "version": "1.0.0",
            "docs": "/docs",
        }

    # ========================================================================
    # Register routers
    # ========================================================================

    app.include_router(usage.router, prefix="/api", tags=["Usage"])
    app.include_router(captions.router, prefix="/api", tags=["Captions"])
    app.include_router(webhooks.router, prefix="/api", tags=["Webhooks"])
    app.include_router(cron.router, prefix="/api", tags=["Cron"])
    app.include_router(plans.router, prefix="/api", tags=["Plans"])

    return app


app = create_app()
