"""API routers package."""
from .admin import admin_router
from .admin import router as operations_router
from .health import router as health_router
from .tools import router as tools_router

__all__ = ["admin_router", "health_router", "operations_router", "tools_router"]
