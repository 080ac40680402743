"""
Rate Analytics - live rates and today's collection
==================================================

Derives read-side statistics from the retained tick series.

Windows
-------
    perSecond:  last 30 s   -> signatures per second
    perMinute:  last 5 min  -> signatures per minute
    perHour:    last 1 h    -> signatures per hour
    perDay:     last 24 h   -> signatures per day

    Window lengths come from AnalyticsConfig. For each window:

        rate = (count_last - count_first) / (ts_last - ts_first) * unit

    clamped at zero so upstream resets never show as negative rates.
    With fewer than two ticks inside the window, the two most recent
    ticks overall are used instead and the window is flagged "fallback".

Confidence
----------
    Each window reports its data-point count and a label:

        reliable     >= RELIABLE_POINTS
        stabilizing  >= STABILIZING_POINTS
        warming_up   otherwise

Today
-----
    baseline  = first tick at/after local midnight (None if no tick yet)
    collected = newest count - baseline

History Down-sampling
---------------------
    downsample() keeps `limit` evenly spaced ticks, always including the
    first and the last.
"""

import logging
from typing import List, Optional, Sequence

from .config import AnalyticsConfig
from .days import format_duration
from .models import RateSnapshot, Tick, TodayStats, WindowRate

logger = logging.getLogger("Tracker.Rates")

MS_PER_SECOND = 1_000
MS_PER_MINUTE = 60_000
MS_PER_HOUR = 3_600_000
MS_PER_DAY = 86_400_000


def confidence_label(points: int, config: AnalyticsConfig) -> str:
    if points >= config.RELIABLE_POINTS:
        return "reliable"
    if points >= config.STABILIZING_POINTS:
        return "stabilizing"
    return "warming_up"


def _rate_between(first: Tick, last: Tick, unit_ms: int) -> float:
    dt = last.ts - first.ts
    if dt <= 0:
        return 0.0
    return max(0.0, (last.count - first.count) / dt * unit_ms)


def window_rate(
    now_ms: int,
    ticks: Sequence[Tick],
    window_ms: int,
    unit_ms: int,
    config: Optional[AnalyticsConfig] = None,
) -> WindowRate:
    """
    Rate over the trailing window ending at now_ms. Ticks stamped slightly
    ahead of now_ms (accepted clock skew) still count toward the window.

    Args:
        now_ms: End of the window (epoch ms)
        ticks: Ticks ascending by ts
        window_ms: Window length
        unit_ms: Rate unit (1000 for per-second, 60000 for per-minute, ...)
    """
    config = config or AnalyticsConfig()
    start = now_ms - window_ms
    in_window = [t for t in ticks if t.ts >= start]
    points = len(in_window)

    result = WindowRate(data_points=points, confidence=confidence_label(points, config))

    if points >= 2:
        result.rate = _rate_between(in_window[0], in_window[-1], unit_ms)
    elif len(ticks) >= 2:
        result.rate = _rate_between(ticks[-2], ticks[-1], unit_ms)
        result.fallback = True

    return result


def compute_rates(
    now_ms: int,
    ticks: Sequence[Tick],
    config: Optional[AnalyticsConfig] = None,
) -> RateSnapshot:
    """
    Compute all four window rates.

    Example:
        >>> snap = compute_rates(t0 + 1000, [Tick(t0, 100), Tick(t0 + 1000, 110)])
        >>> snap.per_second.rate
        10.0
    """
    config = config or AnalyticsConfig()
    return RateSnapshot(
        per_second=window_rate(now_ms, ticks, config.PER_SECOND_WINDOW_MS, MS_PER_SECOND, config),
        per_minute=window_rate(now_ms, ticks, config.PER_MINUTE_WINDOW_MS, MS_PER_MINUTE, config),
        per_hour=window_rate(now_ms, ticks, config.PER_HOUR_WINDOW_MS, MS_PER_HOUR, config),
        per_day=window_rate(now_ms, ticks, config.PER_DAY_WINDOW_MS, MS_PER_DAY, config),
    )


def compute_today_stats(
    now_ms: int,
    ticks: Sequence[Tick],
    day_start_ms: int,
    next_day_start_ms: Optional[int] = None,
) -> TodayStats:
    """
    Collection since local midnight.

    Args:
        now_ms: Server clock (epoch ms)
        ticks: Ticks ascending by ts
        day_start_ms: Local midnight that started today
        next_day_start_ms: Next local midnight; defaults to +24h
    """
    if next_day_start_ms is None:
        next_day_start_ms = day_start_ms + MS_PER_DAY

    until_reset = max(0, next_day_start_ms - now_ms)
    stats = TodayStats(
        day_start=day_start_ms,
        ms_until_reset=until_reset,
        time_until_reset=format_duration(until_reset),
    )

    today = [t for t in ticks if day_start_ms <= t.ts < next_day_start_ms]
    stats.data_points = len(today)
    if not today:
        return stats

    stats.baseline = today[0].count
    stats.current = today[-1].count
    stats.collected = max(0, stats.current - stats.baseline)
    return stats


def downsample(ticks: Sequence[Tick], limit: int) -> List[Tick]:
    """
    Evenly thin a series to at most `limit` points, keeping both ends.

    >>> [t.ts for t in downsample([Tick(i, i) for i in range(1, 11)], 4)]
    [1, 4, 7, 10]
    """
    n = len(ticks)
    if limit <= 0 or n <= limit:
        return list(ticks)
    if limit == 1:
        return [ticks[-1]]

    step = (n - 1) / (limit - 1)
    indices = sorted({round(i * step) for i in range(limit)})
    return [ticks[i] for i in indices]


