"""
Pytest configuration and fixtures.
"""
from typing import Dict, Optional

import pytest
from fastapi.testclient import TestClient

from bakame.api.dependencies import clear_caches, get_weather_provider
from bakame.config import get_settings
from bakame.core.store import InMemoryStore
from bakame.main import app
from bakame.models.schemas import WeatherReport


class FakeWeatherProvider:
    """In-memory WeatherProvider that counts upstream calls."""

    def __init__(self) -> None:
        self.calls = 0
        self.error: Optional[Exception] = None
        self.reports: Dict[str, WeatherReport] = {
            "kigali": WeatherReport(
                location="Kigali",
                country="RW",
                temperature=24,
                feels_like=25,
                humidity=60,
                description="scattered clouds",
                wind_speed=3.1,
            ),
        }

    async def fetch_current(self, location: str, units: str) -> Optional[WeatherReport]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        report = self.reports.get(location.strip().lower())
        if report is None:
            return None
        return report.model_copy(update={"units": units})


@pytest.fixture
def memory_store():
    """Fresh in-memory store."""
    return InMemoryStore()


@pytest.fixture
def fake_weather_provider():
    """Fixture for a fake weather upstream."""
    return FakeWeatherProvider()


@pytest.fixture
def test_client(fake_weather_provider):
    """
    TestClient fixture with dependency overrides.
    Singletons are rebuilt per test so quotas, circuits and cache start clean.
    """
    clear_caches()
    app.dependency_overrides[get_weather_provider] = lambda: fake_weather_provider

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()
    clear_caches()


@pytest.fixture
def admin_headers():
    """Configure ADMIN_TOKEN for the test and return matching headers."""
    settings = get_settings()
    original = settings.ADMIN_TOKEN
    settings.ADMIN_TOKEN = "test-admin-token"

    yield {"X-Admin-Token": "test-admin-token"}

    settings.ADMIN_TOKEN = original


@pytest.fixture
def sample_report():
    """Fixture for a standard weather report."""
    return WeatherReport(
        location="Nairobi",
        country="KE",
        temperature=21,
        feels_like=21,
        humidity=70,
        description="light rain",
        wind_speed=4.6,
    )
