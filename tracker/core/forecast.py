"""
Forecast - Holt-Winters seasonal projection
===========================================

Additive triple exponential smoothing over the daily series of
signatures collected, used to project when a target total is reached.

Model
-----
    Initialisation (needs >= 2 full seasons):
        level    = first deseasonalised observation (x_0 - season_0)
        trend    = series[period] - series[0]
        season_i = mean over seasons of (series[s*period + i] - season_mean_s)

    One pass over the series, at step t with i = t mod period:
        level    = a * (x_t - season_i) + (1 - a) * (level + trend)
        trend    = b * (level - prev_level) + (1 - b) * trend
        season_i = g * (x_t - level) + (1 - g) * season_i

    Forecast h steps ahead:
        level + h * trend + season[(n + h - 1) mod period]

Confidence Interval
-------------------
    Residuals come from back-casting the final state over the observed
    series; their sample standard deviation times a two-sided z value
    gives a symmetric band around every point forecast.

Example
-------
    model = HoltWinters(daily_collected, season_period=7)
    next_week = model.forecast(7)
    band = model.confidence(0.95, 7)
    eta = model.date_when_target(current=812_000, target=1_000_000)
"""

import logging
import math
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Dict, List, Optional, Sequence, Tuple

from .config import ForecastConfig
from .errors import ForecastInsufficientData
from .models import DailyStat

logger = logging.getLogger("Tracker.Forecast")

# Two-sided z values for common confidence levels
Z_TABLE: Dict[float, float] = {
    0.8: 1.282,
    0.9: 1.645,
    0.95: 1.96,
    0.98: 2.326,
    0.99: 2.576,
}
DEFAULT_Z = 1.96

# Safety cap for date_when_target
MAX_HORIZON_DAYS = 365 * 10


def z_value(level: float) -> float:
    return Z_TABLE.get(round(level, 3), DEFAULT_Z)


def daily_series(
    stats: Sequence[DailyStat],
    season_period: int = 7,
) -> Tuple[List[float], List[str]]:
    """
    Signatures collected per day over consecutive calendar dates.

    Dates missing between the first and last archived day (deferred
    archival, downtime) are filled with the value one season earlier, or
    with the mean of the archived days when no earlier season exists.
    Position t in the series is always first_date + t days.

    Returns:
        (series, filled dates as YYYY-MM-DD)
    """
    if not stats:
        return [], []

    by_date = {date.fromisoformat(s.date): float(s.signatures_collected) for s in stats}
    mean = sum(by_date.values()) / len(by_date)

    series: List[float] = []
    filled: List[str] = []
    day, last = min(by_date), max(by_date)
    while day <= last:
        if day in by_date:
            series.append(by_date[day])
        else:
            earlier = len(series) - season_period
            series.append(series[earlier] if earlier >= 0 else mean)
            filled.append(day.isoformat())
        day += timedelta(days=1)

    if filled:
        logger.info(f"Filled {len(filled)} missing days in the daily series")
    return series, filled


@dataclass
class ConfidenceBand:
    lower: List[float]
    upper: List[float]
    level: float

    def to_dict(self) -> Dict[str, object]:
        return {
            "level": self.level,
            "lower": [round(v, 2) for v in self.lower],
            "upper": [round(v, 2) for v in self.upper],
        }


@dataclass
class TargetEstimate:
    days: int
    date: date

    def to_dict(self) -> Dict[str, object]:
        return {"days": self.days, "date": self.date.isoformat()}


class HoltWinters:
    """
    Fitted additive Holt-Winters model.

    Attributes:
        level, trend, seasonal: Final smoothed state
        residual_std: Spread used for confidence bands

    Raises:
        ForecastInsufficientData: Fewer than 2 * season_period observations
        ValueError: Smoothing constant outside (0, 1) or period < 1
    """

    def __init__(
        self,
        series: Sequence[float],
        season_period: int = 7,
        alpha: float = 0.3,
        beta: float = 0.1,
        gamma: float = 0.3,
    ):
        if season_period < 1:
            raise ValueError("season_period must be at least 1")
        for name, value in (("alpha", alpha), ("beta", beta), ("gamma", gamma)):
            if not 0 < value < 1:
                raise ValueError(f"{name} must be in (0, 1), got {value}")

        required = season_period * 2
        if len(series) < required:
            raise ForecastInsufficientData(required=required, available=len(series))

        self.series = [float(v) for v in series]
        self.season_period = season_period
        self.alpha = alpha
        self.beta = beta
        self.gamma = gamma
        self._fit()

    @classmethod
    def from_config(cls, series: Sequence[float], config: ForecastConfig) -> "HoltWinters":
        return cls(
            series,
            season_period=config.SEASON_PERIOD,
            alpha=config.ALPHA,
            beta=config.BETA,
            gamma=config.GAMMA,
        )

    def _fit(self) -> None:
        x = self.series
        p = self.season_period
        seasons = len(x) // p

        season_means = [sum(x[s * p:(s + 1) * p]) / p for s in range(seasons)]
        seasonal = [
            sum(x[s * p + i] - season_means[s] for s in range(seasons)) / seasons
            for i in range(p)
        ]

        level = x[0] - seasonal[0]
        trend = x[p] - x[0]

        for t, value in enumerate(x):
            i = t % p
            prev_level = level
            prev_season = seasonal[i]
            level = self.alpha * (value - prev_season) + (1 - self.alpha) * (level + trend)
            trend = self.beta * (level - prev_level) + (1 - self.beta) * trend
            seasonal[i] = self.gamma * (value - level) + (1 - self.gamma) * prev_season

        self.level = level
        self.trend = trend
        self.seasonal = seasonal

        n = len(x)
        fitted = [level + (t - n) * trend + seasonal[t % p] for t in range(n)]
        residuals = [v - f for v, f in zip(x, fitted)]
        self.residual_std = math.sqrt(sum(r * r for r in residuals) / (n - 1))

        logger.debug(
            f"Holt-Winters fitted: n={n}, level={level:.2f}, trend={trend:.2f}, "
            f"residual_std={self.residual_std:.2f}"
        )

    def forecast(self, h: int) -> List[float]:
        """Point forecasts for steps 1..h."""
        n = len(self.series)
        p = self.season_period
        return [
            self.level + step * self.trend + self.seasonal[(n + step - 1) % p]
            for step in range(1, h + 1)
        ]

    def confidence(self, level: float, h: int) -> ConfidenceBand:
        """Symmetric band of +/- z * residual_std around each point forecast."""
        half = z_value(level) * self.residual_std
        points = self.forecast(h)
        return ConfidenceBand(
            lower=[v - half for v in points],
            upper=[v + half for v in points],
            level=level,
        )

    def date_when_target(
        self,
        current: float,
        target: float,
        today: Optional[date] = None,
    ) -> Optional[TargetEstimate]:
        """
        Accumulate daily forecasts onto current until target is reached.

        Returns:
            TargetEstimate(days, date), or None when the target is not
            reached within ten years
        """
        today = today or date.today()
        if current >= target:
            return TargetEstimate(days=0, date=today)

        total = current
        for day, increment in enumerate(self.forecast(MAX_HORIZON_DAYS), start=1):
            total += increment
            if total >= target:
                return TargetEstimate(days=day, date=today + timedelta(days=day))
        return None

    def to_dict(
        self,
        horizon: int,
        confidence_level: float,
        current: Optional[float] = None,
        target: Optional[float] = None,
        today: Optional[date] = None,
    ) -> Dict[str, object]:
        """Serializable summary for API payloads."""
        result: Dict[str, object] = {
            "available": True,
            "seasonPeriod": self.season_period,
            "observations": len(self.series),
            "level": round(self.level, 4),
            "trend": round(self.trend, 4),
            "residualStd": round(self.residual_std, 4),
            "forecast": [round(v, 2) for v in self.forecast(horizon)],
            "confidence": self.confidence(confidence_level, horizon).to_dict(),
        }
        if current is not None and target is not None:
            estimate = self.date_when_target(current, target, today)
            result["target"] = {
                "target": target,
                "current": current,
                "reachable": estimate is not None,
                "estimate": estimate.to_dict() if estimate else None,
            }
        return result
