"""
Main FastAPI application entry point.
Configures logging, exception handlers, middleware, and routers.
"""
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from bakame.api.dependencies import (
    GUARDED_ENDPOINTS,
    get_rate_limiter,
    get_store,
    get_weather_provider,
)
from bakame.api.routers import admin_router, health_router, operations_router, tools_router
from bakame.config import get_settings
from bakame.config.logging import configure_logging
from bakame.core.exceptions import AppException
from bakame.core.telemetry import setup_telemetry


# =============================================================================
# Lifespan (Startup/Shutdown)
# =============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown events."""
    # Startup
    logger = logging.getLogger(__name__)
    settings = get_settings()

    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")

    store = get_store()
    await store.start()
    logger.info(f"Key-value store backend: {store.backend}")

    limiter = get_rate_limiter()
    # Every guarded route must have a quota before traffic arrives
    limiter.ensure_configured(GUARDED_ENDPOINTS)
    logger.info(f"Rate limiting enabled: {limiter.enabled} ({limiter.algorithm})")

    yield

    # Shutdown
    logger.info("Shutting down application")
    provider = get_weather_provider()
    if hasattr(provider, "aclose"):
        await provider.aclose()
    await store.close()


# =============================================================================
# Exception Handlers
# =============================================================================


async def app_exception_handler(
    request: Request,
    exc: AppException,
) -> JSONResponse:
    """Handle custom application exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
        headers=exc.headers or None,
    )


async def unhandled_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Handle unexpected exceptions - return generic error."""
    logger = logging.getLogger(__name__)
    logger.exception(f"Unhandled exception: {exc}")

    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": "INTERNAL_ERROR",
                "message": "An unexpected error occurred",
            }
        },
    )


# =============================================================================
# Application Factory
# =============================================================================


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    # Configure structured logging
    configure_logging(debug=settings.DEBUG)

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="""
        Bakame AI Resilience Substrate

        Shared protection layer in front of the assistant's upstream services.

        ## Features
        - Per-endpoint rate limiting (authenticated / guest quotas)
        - Cache-aside for tool results with deterministic keys
        - Per-service circuit breakers with fallback payloads
        - Redis backend with in-memory fallback
        - Observability: JSON logs, Prometheus, OpenTelemetry
        """,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # Register exception handlers
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    # Include routers
    app.include_router(health_router)
    app.include_router(tools_router)
    app.include_router(operations_router)
    app.include_router(admin_router)

    # Setup Telemetry (Metrics & Tracing)
    setup_telemetry(app)

    return app


# Create application instance
app = create_app()


# =============================================================================
# Development Entry Point
# =============================================================================


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "bakame.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
