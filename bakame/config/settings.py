"""
Centralized configuration using Pydantic BaseSettings.
All environment variables are loaded here - no hardcoded values.
"""
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    APP_NAME: str = "Bakame AI Resilience"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # Key-value store (in-memory fallback when unset)
    REDIS_URL: Optional[str] = None
    STORE_SWEEP_INTERVAL_SEC: int = 60

    # Rate Limiting
    RATE_LIMIT_ENABLED: bool = True  # False = development bypass
    RATE_LIMIT_WINDOW_SEC: int = 60
    RATE_LIMIT_CHAT_AUTHENTICATED: int = 100
    RATE_LIMIT_CHAT_GUEST: int = 30
    RATE_LIMIT_UPLOAD_AUTHENTICATED: int = 10
    RATE_LIMIT_UPLOAD_GUEST: int = 5
    RATE_LIMIT_TOOLS_AUTHENTICATED: int = 60
    RATE_LIMIT_TOOLS_GUEST: int = 20

    # Circuit Breaker (default profile for unregistered services)
    CIRCUIT_BREAKER_FAILURE_THRESHOLD: int = 5
    CIRCUIT_BREAKER_SUCCESS_THRESHOLD: int = 3
    CIRCUIT_BREAKER_RESET_TIMEOUT_MS: int = 30000
    CIRCUIT_BREAKER_REQUEST_TIMEOUT_MS: int = 10000

    # Cache
    CACHE_SINGLE_FLIGHT: bool = False
    WEATHER_CACHE_TTL_SEC: int = 600  # 10 minutes

    # Upstream: OpenWeather
    OPENWEATHER_API_KEY: str = ""
    OPENWEATHER_BASE_URL: str = "https://api.openweathermap.org/data/2.5"

    # Admin endpoints (open when unset)
    ADMIN_TOKEN: Optional[str] = None

    # Telemetry
    ENABLE_OTEL: bool = False  # Default to False to prevent gRPC errors in dev
    ENABLE_PROMETHEUS: bool = True

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance - singleton pattern."""
    return Settings()
