"""API package - FastAPI routes and dependencies."""
from .dependencies import RateLimitGuard, get_weather_service, resolve_identity
from .routers import admin_router, health_router, operations_router, tools_router

__all__ = [
    "RateLimitGuard",
    "admin_router",
    "get_weather_service",
    "health_router",
    "operations_router",
    "resolve_identity",
    "tools_router",
]
