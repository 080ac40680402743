"""Tests for sample validation and query-parameter coercion."""

import pytest

from conftest import NOW
from tracker.core.config import ValidationConfig
from tracker.core.models import Tick
from tracker.core.validation import (
    MissingParameter,
    TickValidator,
    ValidationError,
    validate_bool,
    validate_float_range,
    validate_positive_int,
)


@pytest.fixture
def validator():
    return TickValidator(ValidationConfig())


class TestTickValidator:

    def test_accepts_plausible_sample(self, validator):
        tick = validator.validate(NOW - 1000, 812_345, NOW)
        assert tick == Tick(ts=NOW - 1000, count=812_345)

    def test_integral_float_is_coerced(self, validator):
        tick = validator.validate(float(NOW), 100.0, NOW)
        assert tick == Tick(ts=NOW, count=100)
        assert isinstance(tick.count, int)

    @pytest.mark.parametrize("ts, count", [
        (None, 10),
        (NOW, None),
        ("1718000000000", 10),
        (NOW, "10"),
        (True, 10),
        (NOW, False),
        (NOW, 10.5),
        (NOW, float("nan")),
        (float("inf"), 10),
    ])
    def test_rejects_malformed(self, validator, ts, count):
        with pytest.raises(ValidationError):
            validator.validate(ts, count, NOW)

    @pytest.mark.parametrize("ts, count, missing", [(None, 10, "ts"), (NOW, None, "count")])
    def test_absent_field_is_missing_parameter(self, validator, ts, count, missing):
        with pytest.raises(MissingParameter) as exc:
            validator.validate(ts, count, NOW)
        body = exc.value.to_dict()
        assert body["error"]["code"] == "MISSING_PARAMETER"
        assert body["error"]["httpStatus"] == 400
        assert body["error"]["details"]["parameter"] == missing

    def test_rejects_non_positive_ts_and_negative_count(self, validator):
        with pytest.raises(ValidationError) as exc:
            validator.validate(0, 10, NOW)
        assert exc.value.parameter == "ts"

        with pytest.raises(ValidationError) as exc:
            validator.validate(NOW, -1, NOW)
        assert exc.value.parameter == "count"

    def test_future_skew_bound(self, validator):
        validator.validate(NOW + 60_000, 10, NOW)
        with pytest.raises(ValidationError, match="future"):
            validator.validate(NOW + 60_001, 10, NOW)

    def test_staleness_bound(self, validator):
        validator.validate(NOW - 86_400_000, 10, NOW)
        with pytest.raises(ValidationError, match="old"):
            validator.validate(NOW - 86_400_001, 10, NOW)

    def test_count_ceiling_is_exclusive(self, validator):
        validator.validate(NOW, 49_999_999, NOW)
        with pytest.raises(ValidationError, match="too high"):
            validator.validate(NOW, 50_000_000, NOW)

    def test_implied_rate_ceiling(self, validator):
        previous = Tick(ts=NOW - 1000, count=100)
        validator.validate(NOW, 1100, NOW, previous=previous)
        with pytest.raises(ValidationError, match="rate"):
            validator.validate(NOW, 1101, NOW, previous=previous)

    def test_decrease_rejected_inside_grace(self, validator):
        previous = Tick(ts=NOW - 60_000, count=500)
        with pytest.raises(ValidationError, match="decrease"):
            validator.validate(NOW, 499, NOW, previous=previous)

    def test_decrease_accepted_after_grace(self, validator):
        previous = Tick(ts=NOW - 301_000, count=500)
        tick = validator.validate(NOW, 450, NOW, previous=previous)
        assert tick.count == 450

    def test_error_envelope(self, validator):
        with pytest.raises(ValidationError) as exc:
            validator.validate(NOW, -5, NOW)
        body = exc.value.to_response()
        assert body["success"] is False
        assert body["error"]["code"] == "INVALID_PARAMETER"
        assert body["error"]["httpStatus"] == 400
        assert body["error"]["details"]["parameter"] == "count"

    def test_check_is_non_raising(self, validator):
        assert validator.check(NOW, 10, NOW) == (True, None)
        accepted, reason = validator.check(NOW + 120_000, 10, NOW)
        assert accepted is False
        assert "future" in reason


class TestParamValidators:

    def test_positive_int(self):
        assert validate_positive_int(None, "limit", default=50) == 50
        assert validate_positive_int("25", "limit") == 25
        with pytest.raises(ValidationError):
            validate_positive_int("abc", "limit")
        with pytest.raises(ValidationError):
            validate_positive_int("0", "limit")
        with pytest.raises(ValidationError):
            validate_positive_int("11", "limit", max_value=10)

    def test_float_range(self):
        assert validate_float_range("", "confidence", default=0.95) == 0.95
        assert validate_float_range("0.9", "confidence", min_value=0.5, max_value=0.999) == 0.9
        with pytest.raises(ValidationError):
            validate_float_range("1.5", "confidence", min_value=0.5, max_value=0.999)
        with pytest.raises(ValidationError):
            validate_float_range("nan", "confidence")

    @pytest.mark.parametrize("raw, expected", [
        ("true", True), ("1", True), ("YES", True),
        ("false", False), ("0", False), ("no", False),
    ])
    def test_bool(self, raw, expected):
        assert validate_bool(raw, "rates") is expected

    def test_bool_rejects_garbage(self):
        with pytest.raises(ValidationError):
            validate_bool("maybe", "rates")
