"""
Tools API router.
Implements GET /v1/tools/weather behind the "tools" rate limit.
"""
import logging
from typing import Literal

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from bakame.api.dependencies import RateLimitGuard, get_weather_service
from bakame.models.schemas import FallbackResponse, WeatherResponse
from bakame.services.weather import WeatherService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/tools", tags=["tools"])


@router.get(
    "/weather",
    response_model=WeatherResponse,
    summary="Current Weather",
    description="""
    Current weather for a city.

    **Features:**
    - Cached for 10 minutes per (location, units)
    - Upstream protected by the "weather" circuit breaker
    - Fallback payload (503) while the upstream is unavailable
    """,
    responses={
        200: {"description": "Weather returned (fresh or cached)"},
        404: {"description": "Unknown location"},
        429: {"description": "Rate limit exceeded"},
        503: {"model": FallbackResponse, "description": "Weather service unavailable"},
    },
)
async def get_weather(
    location: str = Query(..., min_length=1, max_length=100, description="City name"),
    units: Literal["celsius", "fahrenheit"] = Query(default="celsius"),
    _rate_limit=Depends(RateLimitGuard("tools")),
    weather_service: WeatherService = Depends(get_weather_service),
):
    result = await weather_service.get_weather(location, units)

    if isinstance(result, FallbackResponse):
        headers = {"Retry-After": str(result.retry_after)} if result.retry_after else None
        return JSONResponse(status_code=503, content=result.model_dump(), headers=headers)
    return result
