"""
Error Handling for the Tick Engine
==================================

Standardized error codes, typed exceptions and response formatting.

Error Codes
-----------
    INVALID_PARAMETER (400): Malformed or out-of-range input, never retried
    MISSING_PARAMETER (400): Required field absent
    RATE_LIMITED (429): Caller exceeded a quota, retry after the delay
    FORECAST_UNAVAILABLE (422): Too little history for a forecast
    STORAGE_UNAVAILABLE (503): Transient backend failure, retry with backoff
    STORAGE_CORRUPT (500): Unreadable store (recovered locally, not surfaced)
    INTERNAL_ERROR (500): Unexpected internal error

Usage
-----
    from tracker.core.errors import StorageUnavailable, api_error, api_success

    raise StorageUnavailable("tick store busy", retry_after=5)

    return api_success(data)
    return api_error(ErrorCode.RATE_LIMITED, "Rate limit exceeded")
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Standard error codes for API responses."""

    # Client errors (4xx)
    INVALID_PARAMETER = ("INVALID_PARAMETER", 400, "Invalid or malformed parameter")
    MISSING_PARAMETER = ("MISSING_PARAMETER", 400, "Required parameter missing")
    RATE_LIMITED = ("RATE_LIMITED", 429, "Rate limit exceeded")
    FORECAST_UNAVAILABLE = ("FORECAST_UNAVAILABLE", 422, "Not enough history for a forecast")

    # Server errors (5xx)
    INTERNAL_ERROR = ("INTERNAL_ERROR", 500, "An internal error occurred")
    STORAGE_CORRUPT = ("STORAGE_CORRUPT", 500, "Stored data could not be read")
    STORAGE_UNAVAILABLE = ("STORAGE_UNAVAILABLE", 503, "Storage temporarily unavailable")

    def __init__(self, code: str, http_status: int, default_message: str):
        self.code = code
        self.http_status = http_status
        self.default_message = default_message


@dataclass(eq=False)
class TrackerError(Exception):
    """Exception with error code for API responses."""

    error_code: ErrorCode
    message: str
    details: Optional[Dict[str, Any]] = None
    retry_after: Optional[float] = None

    def __str__(self) -> str:
        return f"[{self.error_code.code}] {self.message}"

    @property
    def retryable(self) -> bool:
        return self.retry_after is not None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to API response dict."""
        details = dict(self.details or {})
        if self.retry_after is not None:
            details["retryAfter"] = self.retry_after
        return api_error(self.error_code, self.message, details or None)


class RateLimited(TrackerError):
    """Caller exceeded its quota (or the global ceiling)."""

    def __init__(self, message: str, retry_after: float, scope: str = "caller"):
        super().__init__(
            ErrorCode.RATE_LIMITED,
            message,
            details={"scope": scope},
            retry_after=retry_after,
        )
        self.scope = scope


class StorageUnavailable(TrackerError):
    """Transient backend failure: contention, timeout, lost connection."""

    def __init__(self, message: str, retry_after: float = 5):
        super().__init__(ErrorCode.STORAGE_UNAVAILABLE, message, retry_after=retry_after)


class StorageCorrupt(TrackerError):
    """A store file exists but cannot be decoded."""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(
            ErrorCode.STORAGE_CORRUPT,
            message,
            details={"path": path} if path else None,
        )
        self.path = path


class ForecastInsufficientData(TrackerError):
    """Fewer observations than two full seasons."""

    def __init__(self, required: int, available: int):
        super().__init__(
            ErrorCode.FORECAST_UNAVAILABLE,
            f"Need >= {required} observations (have {available})",
            details={"required": required, "available": available},
        )
        self.required = required
        self.available = available


def api_success(data: Any, **kwargs) -> Dict[str, Any]:
    """
    Build a successful API response.

    Example:
        >>> api_success({"ticks": [...]}, count=5)
        {"success": True, "data": {"ticks": [...]}, "count": 5}
    """
    result = {"success": True, "data": data}
    result.update(kwargs)
    return result


def api_error(
    error_code: ErrorCode,
    message: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Build an error API response.

    Args:
        error_code: The ErrorCode enum value
        message: Custom error message (uses default if not provided)
        details: Additional error details

    Example:
        >>> api_error(ErrorCode.INVALID_PARAMETER, "count must be >= 0")
        {
            "success": False,
            "error": {
                "code": "INVALID_PARAMETER",
                "message": "count must be >= 0",
                "httpStatus": 400
            }
        }
    """
    result = {
        "success": False,
        "error": {
            "code": error_code.code,
            "message": message or error_code.default_message,
            "httpStatus": error_code.http_status,
        }
    }

    if details:
        result["error"]["details"] = details

    return result


def api_error_from_exception(
    exc: Exception,
    default_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
) -> Dict[str, Any]:
    """
    Build error response from an exception.

    TrackerError subclasses keep their own code; anything else is reported
    under default_code with the exception message.
    """
    if isinstance(exc, TrackerError):
        return exc.to_dict()

    return api_error(default_code, str(exc))
