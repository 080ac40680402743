"""
Data Model
==========

Plain dataclasses shared by storage, retention and analytics.

    Tick:       one (ts, count) observation, ts in epoch milliseconds
    DailyStat:  compact summary of one archived calendar day
    RateSnapshot / TodayStats: derived analytics results

Wire format is camelCase, matching the JSON files and API payloads.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass(frozen=True, order=True)
class Tick:
    """A single sample of the tracked counter."""
    ts: int
    count: int

    def to_dict(self) -> Dict[str, int]:
        return {"ts": self.ts, "count": self.count}

    @classmethod
    def from_dict(cls, raw: Any) -> Optional["Tick"]:
        """
        Parse a stored record, returning None for anything malformed.

        Stored files may be hand-edited or truncated, so this never raises.
        """
        if not isinstance(raw, dict):
            return None
        ts = raw.get("ts")
        count = raw.get("count")
        if isinstance(ts, bool) or isinstance(count, bool):
            return None
        if not isinstance(ts, int) or not isinstance(count, int):
            return None
        if ts <= 0 or count < 0:
            return None
        return cls(ts=ts, count=count)


@dataclass
class DailyStat:
    """Archived summary of one local calendar day."""
    date: str               # YYYY-MM-DD in the configured timezone
    start_count: int
    end_count: int
    data_points: int

    @property
    def signatures_collected(self) -> int:
        return self.end_count - self.start_count

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date,
            "startCount": self.start_count,
            "endCount": self.end_count,
            "signaturesCollected": self.signatures_collected,
            "dataPoints": self.data_points,
        }

    @classmethod
    def from_dict(cls, raw: Any) -> Optional["DailyStat"]:
        if not isinstance(raw, dict):
            return None
        try:
            return cls(
                date=str(raw["date"]),
                start_count=int(raw["startCount"]),
                end_count=int(raw["endCount"]),
                data_points=int(raw.get("dataPoints", 0)),
            )
        except (KeyError, TypeError, ValueError):
            return None


@dataclass
class WindowRate:
    """Rate over one trailing window."""
    rate: float = 0.0
    data_points: int = 0
    confidence: str = "warming_up"
    fallback: bool = False      # computed from the two newest ticks instead

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rate": round(self.rate, 4),
            "dataPoints": self.data_points,
            "confidence": self.confidence,
            "fallback": self.fallback,
        }


@dataclass
class RateSnapshot:
    """Rates for all four windows."""
    per_second: WindowRate = field(default_factory=WindowRate)
    per_minute: WindowRate = field(default_factory=WindowRate)
    per_hour: WindowRate = field(default_factory=WindowRate)
    per_day: WindowRate = field(default_factory=WindowRate)

    @property
    def data_points_per_window(self) -> Dict[str, int]:
        return {
            "perSecond": self.per_second.data_points,
            "perMinute": self.per_minute.data_points,
            "perHour": self.per_hour.data_points,
            "perDay": self.per_day.data_points,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "perSecond": round(self.per_second.rate, 4),
            "perMinute": round(self.per_minute.rate, 4),
            "perHour": round(self.per_hour.rate, 4),
            "perDay": round(self.per_day.rate, 4),
            "dataPointsPerWindow": self.data_points_per_window,
            "windows": {
                "perSecond": self.per_second.to_dict(),
                "perMinute": self.per_minute.to_dict(),
                "perHour": self.per_hour.to_dict(),
                "perDay": self.per_day.to_dict(),
            },
        }


@dataclass
class TodayStats:
    """Collection progress since the local day started."""
    day_start: int
    baseline: Optional[int] = None
    current: Optional[int] = None
    collected: int = 0
    data_points: int = 0
    ms_until_reset: int = 0
    time_until_reset: str = "00:00:00"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dayStart": self.day_start,
            "baseline": self.baseline,
            "current": self.current,
            "collected": self.collected,
            "dataPoints": self.data_points,
            "msUntilReset": self.ms_until_reset,
            "timeUntilReset": self.time_until_reset,
        }
