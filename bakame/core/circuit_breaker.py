"""
Circuit Breaker pattern implementation for resilience.
Prevents cascading failures by stopping calls to failing services.

State is process-local: each process learns upstream health on its own.
The OPEN -> HALF_OPEN transition is evaluated lazily whenever the circuit is
read, there is no background timer.
"""
import asyncio
import logging
import math
import time
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple, TypeVar

from pydantic import ValidationError as PydanticValidationError

from bakame.core.exceptions import ConfigurationError
from bakame.core.metrics import CIRCUIT_STATE, CIRCUIT_TRIPS, STATE_VALUES
from bakame.models.schemas import (
    CircuitBreakerConfig,
    CircuitState,
    CircuitStats,
    CircuitStatus,
    FailureInfo,
    FallbackResponse,
    ServiceHealth,
    SystemHealth,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Overrides merged onto the default profile
SERVICE_CONFIGS: Dict[str, Dict[str, int]] = {
    "openai": {"failure_threshold": 3, "reset_timeout_ms": 20000},   # critical, fail fast
    "redis": {"failure_threshold": 10, "reset_timeout_ms": 5000},    # cache misses are tolerable
    "weather": {"failure_threshold": 3, "reset_timeout_ms": 60000},  # external API, wait longer
}

FALLBACK_MESSAGES: Dict[str, str] = {
    "openai": "AI service is temporarily unavailable. Please try again in a few moments.",
    "supabase": "Database service is temporarily unavailable. Your data is safe, please try again shortly.",
    "redis": "Cache service is temporarily unavailable. Service may be slower than usual.",
    "weather": "Weather service is currently unavailable. Please try again later.",
    "n8n": "Automation service is temporarily unavailable. Please try again shortly.",
    "default": "Service is temporarily unavailable. Please try again later.",
}


class CircuitBreaker:
    """
    Circuit breaker for a single upstream service.

    CLOSED -> OPEN after failure_threshold consecutive failures.
    OPEN -> HALF_OPEN once reset_timeout_ms has elapsed since opening.
    HALF_OPEN -> CLOSED after success_threshold consecutive successes,
    HALF_OPEN -> OPEN on any failure (the open timer restarts).

    Usage:
        breaker = CircuitBreaker("weather", CircuitBreakerConfig(failure_threshold=3))
        report = await breaker.call(lambda: client.fetch("Kigali"), fallback=None)
    """

    def __init__(self, name: str, config: Optional[CircuitBreakerConfig] = None) -> None:
        self._name = name
        self._config = config or CircuitBreakerConfig()

        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._consecutive_successes = 0
        self._opened_at: Optional[float] = None
        self._last_state_change = time.time()
        self._last_failure: Optional[FailureInfo] = None
        self._total_requests = 0
        self._total_successes = 0
        self._total_failures = 0

        # Trial calls admitted in the current HALF_OPEN period
        self._trials_in_flight = 0
        self._generation = 0
        self._lock = Lock()
        CIRCUIT_STATE.labels(service=name).set(STATE_VALUES[self._state])

    @property
    def name(self) -> str:
        """Circuit breaker name."""
        return self._name

    @property
    def config(self) -> CircuitBreakerConfig:
        return self._config

    @property
    def state(self) -> CircuitState:
        """Current circuit state (may trigger OPEN -> HALF_OPEN)."""
        with self._lock:
            self._check_reset_timeout()
            return self._state

    async def call(self, operation: Callable[[], Awaitable[T]], fallback: Any = None) -> Any:
        """
        Execute operation through the circuit breaker.

        Args:
            operation: Async callable to protect
            fallback: Value returned when the circuit is open or the call fails

        Returns:
            Result from operation, or fallback. Never raises for operation errors.
        """
        allowed, trial = self._acquire()
        if not allowed:
            logger.warning(
                f"Circuit breaker '{self._name}' OPEN, returning fallback",
                extra={"service": self._name},
            )
            return fallback

        try:
            result = await self._invoke(operation)
        except asyncio.TimeoutError:
            self.record_failure(
                "timeout", f"Operation timed out after {self._config.request_timeout_ms}ms"
            )
            return fallback
        except Exception as e:
            self.record_failure("error", str(e) or type(e).__name__)
            logger.warning(
                f"Circuit breaker '{self._name}' caught error, returning fallback: {e}",
                extra={"service": self._name},
            )
            return fallback
        finally:
            if trial is not None:
                self._release(trial)

        self.record_success()
        return result

    async def _invoke(self, operation: Callable[[], Awaitable[T]]) -> T:
        timeout_ms = self._config.request_timeout_ms
        if not timeout_ms:
            return await operation()
        return await asyncio.wait_for(operation(), timeout=timeout_ms / 1000)

    def _acquire(self) -> Tuple[bool, Optional[int]]:
        """Decide whether a call may proceed; half-open calls take a trial slot."""
        with self._lock:
            self._check_reset_timeout()
            if self._state == CircuitState.OPEN:
                return False, None
            if self._state == CircuitState.HALF_OPEN:
                if self._trials_in_flight >= self._config.success_threshold:
                    return False, None
                self._trials_in_flight += 1
                return True, self._generation
            return True, None

    def _release(self, generation: int) -> None:
        with self._lock:
            if generation == self._generation and self._trials_in_flight > 0:
                self._trials_in_flight -= 1

    def record_success(self) -> None:
        """Record a successful call."""
        with self._lock:
            self._check_reset_timeout()
            self._total_requests += 1
            self._total_successes += 1
            self._consecutive_failures = 0
            self._consecutive_successes += 1

            if (
                self._state == CircuitState.HALF_OPEN
                and self._consecutive_successes >= self._config.success_threshold
            ):
                self._transition(CircuitState.CLOSED, "Success threshold reached")

    def record_failure(self, reason: str = "error", message: str = "") -> None:
        """Record a failed call; reason is "error" or "timeout"."""
        with self._lock:
            self._check_reset_timeout()
            now = time.time()
            self._total_requests += 1
            self._total_failures += 1
            self._consecutive_failures += 1
            self._consecutive_successes = 0
            self._last_failure = FailureInfo(timestamp=now, reason=reason, message=message)

            logger.error(
                f"Circuit breaker '{self._name}' recorded failure "
                f"({self._consecutive_failures}/{self._config.failure_threshold}): "
                f"{reason} {message}",
                extra={"service": self._name, "state": self._state.value},
            )

            if self._state == CircuitState.HALF_OPEN:
                self._transition(CircuitState.OPEN, f"Failure during recovery test: {reason}")
                CIRCUIT_TRIPS.labels(service=self._name, reason=reason).inc()
            elif (
                self._state == CircuitState.CLOSED
                and self._consecutive_failures >= self._config.failure_threshold
            ):
                self._transition(
                    CircuitState.OPEN,
                    f"Failure threshold reached ({self._consecutive_failures} failures)",
                )
                CIRCUIT_TRIPS.labels(service=self._name, reason=reason).inc()

    def _check_reset_timeout(self) -> None:
        """OPEN -> HALF_OPEN once the reset timeout has elapsed. Caller holds the lock."""
        if self._state != CircuitState.OPEN or self._opened_at is None:
            return
        elapsed_ms = (time.time() - self._opened_at) * 1000
        if elapsed_ms >= self._config.reset_timeout_ms:
            self._transition(CircuitState.HALF_OPEN, "Reset timeout elapsed, testing service")

    def _transition(self, new_state: CircuitState, reason: str) -> None:
        """Move to new_state. Caller holds the lock."""
        old_state = self._state
        if old_state == new_state:
            return

        self._state = new_state
        self._last_state_change = time.time()
        self._generation += 1
        self._trials_in_flight = 0

        if new_state == CircuitState.OPEN:
            self._opened_at = self._last_state_change
        else:
            self._consecutive_failures = 0
            self._consecutive_successes = 0
            if new_state == CircuitState.CLOSED:
                self._opened_at = None

        CIRCUIT_STATE.labels(service=self._name).set(STATE_VALUES[new_state])

        if new_state == CircuitState.CLOSED:
            logger.info(
                f"Circuit breaker '{self._name}' recovered to CLOSED ({reason})",
                extra={"service": self._name, "state": new_state.value},
            )
        else:
            logger.warning(
                f"Circuit breaker '{self._name}' {old_state.value} -> {new_state.value}: {reason}",
                extra={"service": self._name, "state": new_state.value},
            )

    def status(self) -> CircuitStatus:
        with self._lock:
            self._check_reset_timeout()
            return CircuitStatus(
                service=self._name,
                state=self._state,
                consecutive_failures=self._consecutive_failures,
                consecutive_successes=self._consecutive_successes,
                opened_at=self._opened_at,
                last_state_change=self._last_state_change,
                last_failure=self._last_failure,
                total_requests=self._total_requests,
                total_successes=self._total_successes,
                total_failures=self._total_failures,
            )

    def stats(self) -> CircuitStats:
        status = self.status()
        failure_rate = (
            status.total_failures / status.total_requests * 100
            if status.total_requests else 0.0
        )
        last_failure = None
        if status.last_failure is not None:
            last_failure = datetime.fromtimestamp(
                status.last_failure.timestamp, tz=timezone.utc
            ).isoformat()
        return CircuitStats(
            state=status.state,
            failure_rate=round(failure_rate, 2),
            total_requests=status.total_requests,
            uptime_ms=int((time.time() - status.last_state_change) * 1000),
            last_failure=last_failure,
        )

    def reset(self) -> None:
        """Manually reset the circuit breaker."""
        with self._lock:
            self._transition(CircuitState.CLOSED, "Manual reset")
            self._consecutive_failures = 0
            self._consecutive_successes = 0
            self._opened_at = None
            self._last_failure = None
            logger.info(
                f"Circuit breaker '{self._name}' manually reset",
                extra={"service": self._name},
            )


class CircuitBreakerRegistry:
    """
    Per-service circuit breakers with independent configuration.

    Records are created lazily on the first recorded outcome for a service
    and live for the whole process. Unregistered services use the default
    profile.

    Usage:
        breakers = CircuitBreakerRegistry()
        reply = await breakers.execute(
            "openai", lambda: llm.complete(prompt), breakers.fallback_response("openai")
        )
    """

    def __init__(
        self,
        default_config: Optional[CircuitBreakerConfig] = None,
        service_configs: Optional[Mapping[str, Mapping[str, Any]]] = None,
    ) -> None:
        self._default = default_config or CircuitBreakerConfig()
        self._configs: Dict[str, CircuitBreakerConfig] = {}
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = Lock()

        overrides = SERVICE_CONFIGS if service_configs is None else service_configs
        for service, service_overrides in overrides.items():
            self.register(service, **service_overrides)

    def register(self, service: str, **overrides: Any) -> CircuitBreakerConfig:
        """Register a service profile; unspecified fields inherit the default."""
        try:
            config = CircuitBreakerConfig(**{**self._default.model_dump(), **overrides})
        except PydanticValidationError as e:
            raise ConfigurationError(f"Invalid circuit breaker config for '{service}': {e}") from e
        with self._lock:
            self._configs[service] = config
            self._breakers.pop(service, None)
        return config

    def config_for(self, service: str) -> CircuitBreakerConfig:
        return self._configs.get(service, self._default)

    def get(self, service: str) -> CircuitBreaker:
        """Get or create the breaker for a service."""
        with self._lock:
            breaker = self._breakers.get(service)
            if breaker is None:
                breaker = CircuitBreaker(service, self.config_for(service))
                self._breakers[service] = breaker
                logger.debug(f"Circuit breaker created for '{service}'", extra={"service": service})
            return breaker

    def _peek(self, service: str) -> Optional[CircuitBreaker]:
        with self._lock:
            return self._breakers.get(service)

    async def execute(
        self,
        service: str,
        operation: Callable[[], Awaitable[T]],
        fallback: Any = None,
    ) -> Any:
        """Run operation under the service's breaker; fallback when open or failing."""
        return await self.get(service).call(operation, fallback)

    def record_success(self, service: str) -> None:
        self.get(service).record_success()

    def record_failure(self, service: str, error: Any = None) -> None:
        """Record a failure for callers managing invocation themselves."""
        reason = "timeout" if isinstance(error, asyncio.TimeoutError) else "error"
        message = "" if error is None else (str(error) or type(error).__name__)
        self.get(service).record_failure(reason, message)

    def is_open(self, service: str) -> bool:
        breaker = self._peek(service)
        return breaker is not None and breaker.state == CircuitState.OPEN

    def is_closed(self, service: str) -> bool:
        breaker = self._peek(service)
        return breaker is None or breaker.state == CircuitState.CLOSED

    def get_status(self, service: str) -> CircuitStatus:
        breaker = self._peek(service)
        if breaker is None:
            # Unknown services report a pristine record without creating one
            return CircuitStatus(
                service=service,
                state=CircuitState.CLOSED,
                last_state_change=time.time(),
            )
        return breaker.status()

    def get_all_statuses(self) -> Dict[str, CircuitStatus]:
        with self._lock:
            breakers = list(self._breakers.values())
        return {breaker.name: breaker.status() for breaker in breakers}

    def get_stats(self, service: str) -> CircuitStats:
        breaker = self._peek(service)
        if breaker is None:
            return CircuitStats(
                state=CircuitState.CLOSED,
                failure_rate=0.0,
                total_requests=0,
                uptime_ms=0,
            )
        return breaker.stats()

    def reset(self, service: str) -> None:
        """Administrative override: force CLOSED and zero counters."""
        breaker = self._peek(service)
        if breaker is None:
            logger.debug(f"No circuit breaker to reset for '{service}'", extra={"service": service})
            return
        breaker.reset()

    def clear(self) -> None:
        """Drop every record (tests and administrative use)."""
        with self._lock:
            self._breakers.clear()
        logger.debug("Cleared all circuit breakers")

    def fallback_response(self, service: str, message: Optional[str] = None) -> FallbackResponse:
        """Standard error-shaped payload for an unavailable service."""
        config = self.config_for(service)
        return FallbackResponse(
            error=message or FALLBACK_MESSAGES.get(service, FALLBACK_MESSAGES["default"]),
            service=service,
            retry_after=math.ceil(config.reset_timeout_ms / 1000),
        )

    def get_system_health(self) -> SystemHealth:
        """Overall health: healthy while no known circuit is OPEN."""
        services: Dict[str, ServiceHealth] = {}
        open_circuits = []
        for service, status in self.get_all_statuses().items():
            services[service] = ServiceHealth(
                state=status.state,
                healthy=status.state == CircuitState.CLOSED,
            )
            if status.state == CircuitState.OPEN:
                open_circuits.append(service)
        return SystemHealth(
            healthy=not open_circuits,
            services=services,
            open_circuits=open_circuits,
        )
