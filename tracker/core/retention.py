"""
Retention and Daily Archival
============================

Runs on the write path after every accepted tick.

Two independent jobs:

    Archival
        When retained ticks exist from before today's local midnight and
        yesterday has no DailyStat yet, summarise yesterday's ticks
        (first count, last count, number of points) and upsert it by
        date. Days with fewer than MIN_ARCHIVE_POINTS ticks are deferred,
        not dropped: the next write retries. Re-archiving the same day
        with the same ticks yields the same record.

    Retention
        Ticks older than the retention window are pruned whether or not
        archival succeeded. Daily summaries older than DAILY_HISTORY_DAYS
        are pruned as well.

Failures in either job are logged and never fail the write that
triggered them.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import date, timedelta
from typing import List, Optional

from .config import RetentionConfig
from .days import date_start_ms, local_date, local_day_start, resolve_timezone
from .errors import TrackerError
from .models import DailyStat, Tick
from .store import TickStore

logger = logging.getLogger("Tracker.Retention")


def summarize_day(ticks: List[Tick], day: str) -> Optional[DailyStat]:
    """Build a DailyStat from one day's ticks (ascending)."""
    if not ticks:
        return None
    return DailyStat(
        date=day,
        start_count=ticks[0].count,
        end_count=ticks[-1].count,
        data_points=len(ticks),
    )


@dataclass
class RetentionResult:
    archived: Optional[DailyStat] = None
    deferred: bool = False
    pruned_ticks: int = 0
    pruned_days: int = 0


class RetentionManager:
    """
    Enforces the rolling window and compacts finished days.

    Example:
        >>> manager = RetentionManager(store, RetentionConfig())
        >>> manager.on_write(now_ms)
    """

    def __init__(self, store: TickStore, config: Optional[RetentionConfig] = None):
        self.store = store
        self.config = config or RetentionConfig()
        self.tz = resolve_timezone(self.config.TIMEZONE)
        # Yesterday's date once it needs no further work (archived, or no ticks before today)
        self._settled_day: Optional[str] = None
        self._lock = threading.Lock()

    def archive_day(
        self,
        day: str,
        ticks: Optional[List[Tick]] = None,
        deadline: Optional[float] = None,
    ) -> Optional[DailyStat]:
        """
        Archive one local date (YYYY-MM-DD).

        Returns:
            The stored DailyStat, or None when the day has too few points
        """
        target = date.fromisoformat(day)
        start = date_start_ms(target, self.tz)
        end = date_start_ms(target + timedelta(days=1), self.tz)

        if ticks is None:
            ticks = self.store.read_all(deadline=deadline)
        day_ticks = [t for t in ticks if start <= t.ts < end]

        if len(day_ticks) < self.config.MIN_ARCHIVE_POINTS:
            logger.warning(
                f"Deferring archival of {day}: {len(day_ticks)} points "
                f"(need {self.config.MIN_ARCHIVE_POINTS})"
            )
            return None

        stat = summarize_day(day_ticks, day)
        self.store.upsert_daily_stat(stat, deadline=deadline)
        logger.info(
            f"Archived {day}: {stat.signatures_collected} signatures "
            f"from {stat.data_points} points"
        )
        return stat

    def _archive_yesterday(
        self,
        yesterday: str,
        today_start: int,
        result: RetentionResult,
        deadline: Optional[float],
    ) -> None:
        archived_dates = {s.date for s in self.store.read_daily_stats(deadline=deadline)}
        if yesterday in archived_dates:
            self._settled_day = yesterday
            return

        ticks = self.store.read_all(deadline=deadline)
        if not ticks or ticks[0].ts >= today_start:
            self._settled_day = yesterday
            return

        stat = self.archive_day(yesterday, ticks, deadline)
        if stat is None:
            result.deferred = True
        else:
            result.archived = stat
            self._settled_day = yesterday

    def on_write(
        self,
        now_ms: int,
        written_ts: Optional[int] = None,
        deadline: Optional[float] = None,
    ) -> RetentionResult:
        """
        Run archival then retention; never raises TrackerError.

        Once yesterday is settled the call touches no storage for the rest
        of the local day, unless written_ts lands before today's midnight.
        The store's append already drops ticks past the retention cutoff,
        so the sweep here runs once per local day.

        Args:
            now_ms: Server clock (epoch ms)
            written_ts: ts of the tick that triggered the call, if any
            deadline: time.monotonic() bound for storage I/O
        """
        result = RetentionResult()
        today_start = local_day_start(now_ms, self.tz)
        yesterday = (local_date(now_ms, self.tz) - timedelta(days=1)).isoformat()

        with self._lock:
            late_tick = written_ts is not None and written_ts < today_start
            if self._settled_day == yesterday and not late_tick:
                return result

            try:
                self._archive_yesterday(yesterday, today_start, result, deadline)
            except TrackerError as e:
                logger.error(f"Archival failed: {e}")

            try:
                result.pruned_ticks = self.store.prune_older_than(
                    now_ms - self.config.retention_ms, deadline=deadline
                )
                oldest_day = local_date(now_ms, self.tz) - timedelta(
                    days=self.config.DAILY_HISTORY_DAYS
                )
                result.pruned_days = self.store.prune_daily_stats(
                    oldest_day.isoformat(), deadline=deadline
                )
            except TrackerError as e:
                logger.error(f"Retention pruning failed: {e}")

        return result
