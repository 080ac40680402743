"""
Deduplication and Rate Limiting
===============================

Write-path guards that run before a sample touches storage.

Deduplicator
------------
    Skips a sample when any of these hold:

        - identical to the last accepted (ts, count)
        - same count as the last accepted sample, within PROXIMITY_MS
        - its per-second signature "count-floor(ts/1000)" was written
          less than WINDOW_MS ago (several pollers converging on the
          same upstream reading)

    A duplicate is a success-equivalent no-op, not an error.

RateLimiter
-----------
    Fixed-window counter per caller key plus an optional global ceiling.
    Exceeding either raises RateLimited carrying the seconds until the
    window resets.

Memory Bounds
-------------
    Both structures prune entries whose window has elapsed once their
    size crosses PRUNE_THRESHOLD, and expose prune() so housekeeping can
    trigger it explicitly.

Thread Safety
-------------
    All public methods take an internal lock; one instance is shared by
    every request thread of the process.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Dict, Optional

from .config import DedupConfig, RateLimitConfig
from .errors import RateLimited
from .models import Tick

logger = logging.getLogger("Tracker.Dedup")


def dedup_signature(ts: int, count: int) -> str:
    """Coarse per-second key for near-duplicate detection."""
    return f"{count}-{ts // 1000}"


class Deduplicator:
    """
    Tracks the last accepted sample and recent write signatures.

    The last accepted sample doubles as the snapshot the validator
    compares against, so both guards see the same history.
    """

    def __init__(self, config: Optional[DedupConfig] = None):
        self.config = config or DedupConfig()
        self._last: Optional[Tick] = None
        self._recent: Dict[str, int] = {}
        self._lock = threading.Lock()
        self.skipped = 0

    @property
    def last_accepted(self) -> Optional[Tick]:
        return self._last

    def seed(self, tick: Optional[Tick]) -> None:
        """Prime the last accepted sample (e.g. newest stored tick at startup)."""
        with self._lock:
            if tick is not None and self._last is None:
                self._last = tick

    def should_skip(self, caller_key: str, ts: int, count: int) -> bool:
        with self._lock:
            last = self._last
            reason = None

            if last is not None and last.ts == ts and last.count == count:
                reason = "exact"
            elif (
                last is not None
                and last.count == count
                and abs(ts - last.ts) < self.config.PROXIMITY_MS
            ):
                reason = "proximity"
            else:
                written_at = self._recent.get(dedup_signature(ts, count))
                if written_at is not None and ts - written_at < self.config.WINDOW_MS:
                    reason = "signature"

            if reason:
                self.skipped += 1
                logger.debug(f"Duplicate from {caller_key} ({reason}): ts={ts} count={count}")
                return True
            return False

    def record(self, tick: Tick) -> None:
        """Remember an accepted write."""
        with self._lock:
            self._last = tick
            self._recent[dedup_signature(tick.ts, tick.count)] = tick.ts
            if len(self._recent) > self.config.PRUNE_THRESHOLD:
                self._prune_locked(tick.ts)

    def prune(self, now_ms: int) -> int:
        """Drop signatures older than the dedup window."""
        with self._lock:
            return self._prune_locked(now_ms)

    def _prune_locked(self, now_ms: int) -> int:
        cutoff = now_ms - self.config.WINDOW_MS
        stale = [k for k, written in self._recent.items() if written < cutoff]
        for k in stale:
            del self._recent[k]
        return len(stale)

    @property
    def size(self) -> int:
        return len(self._recent)


@dataclass
class RateLimitRecord:
    """Request count inside the current window for one caller."""
    count: int
    window_reset_at: int


class RateLimiter:
    """
    Fixed-window rate limiter keyed by caller identity.

    Example:
        >>> limiter = RateLimiter(RateLimitConfig())
        >>> limiter.hit("203.0.113.7", now_ms)    # raises RateLimited when over quota
    """

    def __init__(self, config: Optional[RateLimitConfig] = None):
        self.config = config or RateLimitConfig()
        self._records: Dict[str, RateLimitRecord] = {}
        self._global = RateLimitRecord(count=0, window_reset_at=0)
        self._lock = threading.Lock()
        self.rejected = 0

    def hit(self, caller_key: str, now_ms: int) -> None:
        """
        Count one request for caller_key.

        Raises:
            RateLimited: When the caller or the process exceeded its quota.
                retry_after is in seconds and never exceeds the window.
        """
        cfg = self.config
        with self._lock:
            if len(self._records) > cfg.PRUNE_THRESHOLD:
                self._prune_locked(now_ms)

            if now_ms >= self._global.window_reset_at:
                self._global = RateLimitRecord(count=0, window_reset_at=now_ms + cfg.WINDOW_MS)

            if cfg.GLOBAL_MAX_REQUESTS > 0 and self._global.count >= cfg.GLOBAL_MAX_REQUESTS:
                self.rejected += 1
                raise RateLimited(
                    "Global rate limit exceeded",
                    retry_after=self._retry_after(self._global, now_ms),
                    scope="global",
                )

            record = self._records.get(caller_key)
            if record is None or now_ms >= record.window_reset_at:
                self._records[caller_key] = RateLimitRecord(
                    count=1, window_reset_at=now_ms + cfg.WINDOW_MS
                )
                self._global.count += 1
                return

            if record.count >= cfg.MAX_REQUESTS:
                self.rejected += 1
                logger.warning(f"Rate limit exceeded for {caller_key}")
                raise RateLimited(
                    "Rate limit exceeded",
                    retry_after=self._retry_after(record, now_ms),
                )

            record.count += 1
            self._global.count += 1

    def _retry_after(self, record: RateLimitRecord, now_ms: int) -> int:
        remaining_ms = max(0, record.window_reset_at - now_ms)
        # Round up to whole seconds for the Retry-After header
        return min(-(-remaining_ms // 1000), -(-self.config.WINDOW_MS // 1000))

    def prune(self, now_ms: int) -> int:
        """Drop callers whose window has elapsed."""
        with self._lock:
            return self._prune_locked(now_ms)

    def _prune_locked(self, now_ms: int) -> int:
        stale = [k for k, r in self._records.items() if r.window_reset_at <= now_ms]
        for k in stale:
            del self._records[k]
        if stale:
            logger.debug(f"Pruned {len(stale)} rate limit records")
        return len(stale)

    @property
    def size(self) -> int:
        return len(self._records)
