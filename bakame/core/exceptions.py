"""
Custom exception hierarchy for centralized error handling.
All exceptions map to appropriate HTTP status codes.
"""
from typing import Any, Dict, Optional


class AppException(Exception):
    """Base exception for all application errors."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        error_code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}
        self.headers = headers or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to API response format."""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "details": self.details,
            }
        }


class ValidationError(AppException):
    """Invalid input data."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(
            message=message,
            status_code=400,
            error_code="VALIDATION_ERROR",
            details=details,
        )


class UnauthorizedError(AppException):
    """Missing or invalid admin credentials."""

    def __init__(self, message: str = "Admin token required") -> None:
        super().__init__(
            message=message,
            status_code=401,
            error_code="UNAUTHORIZED",
        )


class NotFoundError(AppException):
    """Resource not found."""

    def __init__(self, resource: str, identifier: str) -> None:
        super().__init__(
            message=f"{resource} not found: {identifier}",
            status_code=404,
            error_code="NOT_FOUND",
            details={"resource": resource, "identifier": identifier},
        )


class RateLimitError(AppException):
    """Too many requests."""

    def __init__(self, retry_after: int = 1, reset_time: Optional[int] = None) -> None:
        headers = {"Retry-After": str(retry_after), "X-RateLimit-Remaining": "0"}
        if reset_time is not None:
            headers["X-RateLimit-Reset"] = str(reset_time)
        super().__init__(
            message="Too many requests. Please slow down.",
            status_code=429,
            error_code="RATE_LIMIT_EXCEEDED",
            details={"retry_after_seconds": retry_after},
            headers=headers,
        )
        self.retry_after = retry_after


class StoreError(AppException):
    """Key-value backend unreachable or rejected a command."""

    def __init__(self, operation: str, reason: str = "Unknown") -> None:
        super().__init__(
            message=f"Store {operation} failed: {reason}",
            status_code=503,
            error_code="STORE_UNAVAILABLE",
            details={"operation": operation, "reason": reason},
        )
        self.operation = operation


class ConfigurationError(AppException):
    """Programming error in resilience configuration (caught at start-up)."""

    def __init__(self, message: str) -> None:
        super().__init__(
            message=message,
            status_code=500,
            error_code="CONFIGURATION_ERROR",
        )
