"""
Prometheus metrics for the resilience substrate.
Exposed on /metrics alongside the HTTP instrumentation.
"""
from prometheus_client import Counter, Gauge

from bakame.models.schemas import CircuitState

CIRCUIT_STATE = Gauge(
    "bakame_circuit_state",
    "Circuit breaker state (0=closed, 1=open, 2=half_open)",
    ["service"],
)

CIRCUIT_TRIPS = Counter(
    "bakame_circuit_trips_total",
    "Circuit breaker CLOSED/HALF_OPEN -> OPEN transitions",
    ["service", "reason"],
)

RATE_LIMIT_DECISIONS = Counter(
    "bakame_rate_limit_decisions_total",
    "Rate limit outcomes",
    ["endpoint", "decision"],  # allowed | rejected | fail_open
)

CACHE_LOOKUPS = Counter(
    "bakame_cache_lookups_total",
    "Cache reads by outcome",
    ["result"],  # hit | miss | error
)

STATE_VALUES = {
    CircuitState.CLOSED: 0,
    CircuitState.OPEN: 1,
    CircuitState.HALF_OPEN: 2,
}
