"""
Health check router for observability.
"""
import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from bakame.api.dependencies import get_circuit_breakers, get_store
from bakame.config import get_settings
from bakame.core.circuit_breaker import CircuitBreakerRegistry
from bakame.core.store import KeyValueStore

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health", summary="Health Check")
async def health_check(
    breakers: CircuitBreakerRegistry = Depends(get_circuit_breakers),
) -> dict:
    """Overall status: degraded while any known circuit is OPEN."""
    health = breakers.get_system_health()
    return {
        "status": "healthy" if health.healthy else "degraded",
        "version": get_settings().APP_VERSION,
        **health.model_dump(mode="json"),
    }


@router.get("/health/live", summary="Liveness Check")
async def liveness_check() -> dict:
    """Process is up; no dependencies consulted."""
    return {"status": "alive"}


@router.get("/health/ready", summary="Readiness Check")
async def readiness_check(
    store: KeyValueStore = Depends(get_store),
    breakers: CircuitBreakerRegistry = Depends(get_circuit_breakers),
):
    """
    Readiness check for Kubernetes.
    Not ready while the key-value store is unreachable; open circuits only degrade.
    """
    try:
        store_ok = await store.ping()
    except Exception as e:
        logger.error(f"Store ping failed: {e}")
        store_ok = False

    health = breakers.get_system_health()
    body = {
        "status": "ready" if store_ok else "not_ready",
        "store": {"backend": store.backend, "reachable": store_ok},
        "degraded": not health.healthy,
        "open_circuits": health.open_circuits,
    }
    if not store_ok:
        return JSONResponse(status_code=503, content=body)
    return body
