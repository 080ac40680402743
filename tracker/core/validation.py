"""
Input Validation
================

Two layers of checks:

    TickValidator
        Rejects malformed or implausible samples before they reach
        storage. Pure: it compares the candidate against the last
        accepted sample supplied by the caller and never mutates state.

    validate_* helpers
        Coerce query parameters (usually strings) into typed values with
        clear error messages.

Rules applied to a sample, in order
-----------------------------------
    1. ts and count are finite integers
    2. ts > 0, count >= 0
    3. ts no more than MAX_FUTURE_SKEW_MS ahead of now
    4. ts no older than MAX_STALENESS_MS
    5. count below MAX_COUNT
    6. implied rate since the previous sample <= MAX_RATE_PER_SECOND
    7. count does not decrease unless DECREASE_GRACE_MS has passed
       (upstream counters occasionally reset or recalibrate)

Error Response Format
--------------------
    {
        "success": False,
        "error": {
            "code": "INVALID_PARAMETER",
            "message": "...",
            "httpStatus": 400,
            "details": { "parameter": "...", "value": "..." }
        }
    }
"""

import math
from typing import Any, Dict, Optional, Tuple

from .config import ValidationConfig
from .errors import ErrorCode, TrackerError
from .models import Tick


class ValidationError(TrackerError):
    """
    Validation error with details for API response.

    Definitive rejection: the caller must not retry the same input.
    """

    def __init__(
        self,
        parameter: str,
        message: str,
        value: Any = None,
        error_code: ErrorCode = ErrorCode.INVALID_PARAMETER,
    ):
        super().__init__(
            error_code,
            message,
            details={
                "parameter": parameter,
                "value": str(value) if value is not None else None,
            },
        )
        self.parameter = parameter
        self.value = value

    def to_response(self) -> Dict[str, Any]:
        return self.to_dict()

    def __str__(self) -> str:
        return f"Invalid '{self.parameter}': {self.message}"


class MissingParameter(ValidationError):
    """A required field is absent from the payload."""

    def __init__(self, parameter: str):
        super().__init__(
            parameter,
            f"'{parameter}' is required",
            error_code=ErrorCode.MISSING_PARAMETER,
        )


def _coerce_int(value: Any, name: str) -> int:
    """Accept ints and integral finite floats; reject everything else."""
    if isinstance(value, bool):
        raise ValidationError(name, "must be an integer", value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValidationError(name, "must be finite", value)
        if not value.is_integer():
            raise ValidationError(name, "must be an integer", value)
        return int(value)
    raise ValidationError(name, f"must be an integer, got {type(value).__name__}", value)


class TickValidator:
    """
    Checks candidate samples against configured sanity bounds.

    Example:
        >>> validator = TickValidator(ValidationConfig())
        >>> tick = validator.validate(ts, count, now_ms=now, previous=last)
    """

    def __init__(self, config: Optional[ValidationConfig] = None):
        self.config = config or ValidationConfig()

    def validate(
        self,
        ts: Any,
        count: Any,
        now_ms: int,
        previous: Optional[Tick] = None,
    ) -> Tick:
        """
        Validate a candidate sample.

        Args:
            ts: Candidate timestamp (epoch ms)
            count: Candidate counter value
            now_ms: Server clock (epoch ms)
            previous: Last accepted sample, if any

        Returns:
            The accepted Tick

        Raises:
            ValidationError: With the first rule that failed
        """
        if ts is None:
            raise MissingParameter("ts")
        if count is None:
            raise MissingParameter("count")

        ts = _coerce_int(ts, "ts")
        count = _coerce_int(count, "count")
        cfg = self.config

        if ts <= 0:
            raise ValidationError("ts", "must be positive", ts)
        if count < 0:
            raise ValidationError("count", "must be at least 0", count)

        if ts > now_ms + cfg.MAX_FUTURE_SKEW_MS:
            raise ValidationError("ts", "Timestamp too far in future", ts)
        if ts < now_ms - cfg.MAX_STALENESS_MS:
            raise ValidationError("ts", "Timestamp too old", ts)

        if count >= cfg.MAX_COUNT:
            raise ValidationError("count", "Signature count too high", count)

        if previous is not None:
            time_diff = ts - previous.ts
            count_diff = count - previous.count

            if time_diff > 0 and count_diff / (time_diff / 1000) > cfg.MAX_RATE_PER_SECOND:
                raise ValidationError("count", "Signature rate too high", count)

            if count_diff < 0 and time_diff < cfg.DECREASE_GRACE_MS:
                raise ValidationError("count", "Signatures cannot decrease", count)

        return Tick(ts=ts, count=count)

    def check(
        self,
        ts: Any,
        count: Any,
        now_ms: int,
        previous: Optional[Tick] = None,
    ) -> Tuple[bool, Optional[str]]:
        """Non-raising variant returning (accepted, rejection reason)."""
        try:
            self.validate(ts, count, now_ms, previous)
        except ValidationError as e:
            return False, e.message
        return True, None


def validate_positive_int(
    value: Any,
    name: str,
    default: Optional[int] = None,
    min_value: int = 1,
    max_value: Optional[int] = None,
) -> Optional[int]:
    """
    Validate and convert value to an integer within bounds.

    Args:
        value: Input value (may be string from query param)
        name: Parameter name for error messages
        default: Returned when value is None or empty
        min_value: Minimum allowed value (default: 1)
        max_value: Maximum allowed value (optional)

    Raises:
        ValidationError: If value is invalid
    """
    if value is None or value == "":
        return default

    try:
        int_val = int(value)
    except (ValueError, TypeError):
        raise ValidationError(name, f"must be an integer, got '{value}'", value)

    if int_val < min_value:
        raise ValidationError(name, f"must be at least {min_value}, got {int_val}", value)

    if max_value is not None and int_val > max_value:
        raise ValidationError(name, f"must be at most {max_value}, got {int_val}", value)

    return int_val


def validate_float_range(
    value: Any,
    name: str,
    default: Optional[float] = None,
    min_value: float = 0.0,
    max_value: Optional[float] = None,
) -> Optional[float]:
    if value is None or value == "":
        return default

    try:
        float_val = float(value)
    except (ValueError, TypeError):
        raise ValidationError(name, f"must be a number, got '{value}'", value)

    if not math.isfinite(float_val) or float_val < min_value:
        raise ValidationError(name, f"must be at least {min_value}, got {value}", value)

    if max_value is not None and float_val > max_value:
        raise ValidationError(name, f"must be at most {max_value}, got {value}", value)

    return float_val


def validate_bool(
    value: Any,
    name: str,
    default: bool = False,
) -> bool:
    """
    Validate boolean parameter.

    Accepts: true/false, 1/0, yes/no (case insensitive)
    """
    if value is None or value == "":
        return default

    if isinstance(value, bool):
        return value

    str_val = str(value).lower().strip()

    if str_val in ("true", "1", "yes"):
        return True
    if str_val in ("false", "0", "no"):
        return False

    raise ValidationError(name, f"must be a boolean (true/false), got '{value}'", value)
