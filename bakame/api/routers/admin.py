"""
Operational endpoints: quota status, circuit inspection and cache management.
Admin routes require X-Admin-Token matching ADMIN_TOKEN and are closed when
it is unset.
"""
import logging
from typing import Dict

from fastapi import APIRouter, Depends, Query, Request

from bakame.api.dependencies import (
    get_cache_layer,
    get_circuit_breakers,
    get_rate_limiter,
    require_admin,
    resolve_identity,
)
from bakame.core.cache import KEY_PREFIX, CacheLayer
from bakame.core.circuit_breaker import CircuitBreakerRegistry
from bakame.core.exceptions import NotFoundError, ValidationError
from bakame.core.rate_limiter import RateLimiter
from bakame.models.schemas import (
    CacheStatsResponse,
    CircuitStats,
    CircuitStatus,
    InvalidateResponse,
    RateLimitResult,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["operations"])
admin_router = APIRouter(
    prefix="/v1/admin",
    tags=["admin"],
    dependencies=[Depends(require_admin)],
)


def _ensure_endpoint(limiter: RateLimiter, endpoint: str) -> None:
    if endpoint not in limiter.endpoints:
        raise NotFoundError("Rate limit endpoint", endpoint)


# =============================================================================
# Rate Limits
# =============================================================================


@router.get(
    "/rate-limit/{endpoint}",
    response_model=RateLimitResult,
    summary="Current Quota",
)
async def get_rate_limit_status(
    endpoint: str,
    request: Request,
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> RateLimitResult:
    """Remaining quota for the calling identity. Does not consume a request."""
    _ensure_endpoint(limiter, endpoint)
    identifier, is_authenticated = resolve_identity(request)
    return await limiter.get_rate_limit_status(endpoint, identifier, is_authenticated)


@admin_router.delete("/rate-limit/{endpoint}/{identifier}", summary="Reset Quota")
async def reset_rate_limit(
    endpoint: str,
    identifier: str,
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> dict:
    _ensure_endpoint(limiter, endpoint)
    await limiter.reset_rate_limit(endpoint, identifier)
    return {"endpoint": endpoint, "identifier": identifier, "reset": True}


# =============================================================================
# Circuit Breakers
# =============================================================================


@admin_router.get(
    "/circuits",
    response_model=Dict[str, CircuitStatus],
    summary="All Circuit States",
)
async def list_circuits(
    breakers: CircuitBreakerRegistry = Depends(get_circuit_breakers),
) -> Dict[str, CircuitStatus]:
    return breakers.get_all_statuses()


@admin_router.get(
    "/circuits/{service}",
    response_model=CircuitStats,
    summary="Circuit Statistics",
)
async def get_circuit(
    service: str,
    breakers: CircuitBreakerRegistry = Depends(get_circuit_breakers),
) -> CircuitStats:
    return breakers.get_stats(service)


@admin_router.post(
    "/circuits/{service}/reset",
    response_model=CircuitStatus,
    summary="Force Circuit Closed",
)
async def reset_circuit(
    service: str,
    breakers: CircuitBreakerRegistry = Depends(get_circuit_breakers),
) -> CircuitStatus:
    breakers.reset(service)
    logger.info(f"Circuit '{service}' reset by admin", extra={"service": service})
    return breakers.get_status(service)


# =============================================================================
# Cache
# =============================================================================


@admin_router.get("/cache/stats", response_model=CacheStatsResponse, summary="Cache Statistics")
async def cache_stats(cache: CacheLayer = Depends(get_cache_layer)) -> CacheStatsResponse:
    stats = cache.stats()
    return CacheStatsResponse(
        hits=stats.hits,
        misses=stats.misses,
        errors=stats.errors,
        hit_rate=stats.hit_rate,
        backend=cache.store.backend,
    )


@admin_router.post("/cache/stats/reset", summary="Reset Cache Statistics")
async def reset_cache_stats(cache: CacheLayer = Depends(get_cache_layer)) -> dict:
    cache.reset_stats()
    return {"reset": True}


@admin_router.delete("/cache", response_model=InvalidateResponse, summary="Invalidate Cache")
async def invalidate_cache(
    pattern: str = Query(
        ...,
        min_length=1,
        description="Exact key, or pattern with * wildcards (e.g. cache:tool:weather:*)",
    ),
    cache: CacheLayer = Depends(get_cache_layer),
) -> InvalidateResponse:
    if not pattern.startswith(f"{KEY_PREFIX}:"):
        # Rate-limit counters share the store
        raise ValidationError(f"Pattern must start with '{KEY_PREFIX}:'", details={"pattern": pattern})
    deleted = await cache.invalidate(pattern)
    return InvalidateResponse(pattern=pattern, deleted=deleted)
