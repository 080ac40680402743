"""
Local calendar-day helpers.

All tick timestamps are epoch milliseconds; the "day" that daily quotas
and archival refer to is the calendar day in the configured timezone,
so DST transitions produce 23h and 25h days.
"""

from datetime import date, datetime, time as dt_time, timedelta, timezone, tzinfo
from functools import lru_cache
from zoneinfo import ZoneInfo

MS_PER_DAY = 86_400_000


@lru_cache(maxsize=16)
def resolve_timezone(name: str) -> tzinfo:
    """UTC without tzdata lookup; anything else through zoneinfo."""
    if name.upper() in ("UTC", "Z", "GMT"):
        return timezone.utc
    return ZoneInfo(name)


def local_date(ts_ms: int, tz: tzinfo) -> date:
    return datetime.fromtimestamp(ts_ms / 1000, tz).date()


def date_start_ms(day: date, tz: tzinfo) -> int:
    """Epoch ms of local midnight starting the given date."""
    midnight = datetime.combine(day, dt_time.min).replace(tzinfo=tz)
    return int(midnight.timestamp() * 1000)


def local_day_start(ts_ms: int, tz: tzinfo) -> int:
    return date_start_ms(local_date(ts_ms, tz), tz)


def next_day_start(ts_ms: int, tz: tzinfo) -> int:
    return date_start_ms(local_date(ts_ms, tz) + timedelta(days=1), tz)


def format_duration(ms: int) -> str:
    """
    Format milliseconds as HH:MM:SS.

    >>> format_duration(3_723_000)
    '01:02:03'
    """
    total = max(0, ms) // 1000
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"
