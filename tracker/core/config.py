"""
Tracker Configuration Module
============================

Centralized configuration for the tick engine. All thresholds, windows
and limits are defined here so they can be tuned without touching the
storage or analytics code.

Usage
-----
    from tracker.core.config import TrackerConfig

    config = TrackerConfig()                 # defaults + environment
    config = TrackerConfig.from_dict(yaml_section)

    retention = config.RETENTION.RETENTION_HOURS

Environment Override
-------------------
Every default can be overridden via environment variables using the
pattern: TRACKER_{GROUP}_{NAME}

For example:
    TRACKER_RETENTION_RETENTION_HOURS=30
    TRACKER_RATE_LIMIT_MAX_REQUESTS=240

Values from a YAML mapping passed to from_dict() win over the
environment. The resulting object is immutable; build a new one to
change settings.
"""

import logging
import os
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, Optional

logger = logging.getLogger("Tracker.Config")


def _env_int(key: str, default: int) -> int:
    """Get integer from environment or use default."""
    val = os.environ.get(key)
    if val is not None:
        try:
            return int(val)
        except ValueError:
            logger.warning(f"Invalid int value for {key}: {val}, using default {default}")
    return default


def _env_float(key: str, default: float) -> float:
    """Get float from environment or use default."""
    val = os.environ.get(key)
    if val is not None:
        try:
            return float(val)
        except ValueError:
            logger.warning(f"Invalid float value for {key}: {val}, using default {default}")
    return default


def _env_str(key: str, default: str) -> str:
    val = os.environ.get(key)
    return val if val else default


def _int(key: str, default: int):
    return field(default_factory=lambda: _env_int(key, default))


def _float(key: str, default: float):
    return field(default_factory=lambda: _env_float(key, default))


def _str(key: str, default: str):
    return field(default_factory=lambda: _env_str(key, default))


@dataclass(frozen=True)
class StorageConfig:
    """Persistence backend selection and I/O bounds."""

    # "file" (locked JSON store) or "sqlite" (relational table)
    BACKEND: str = _str("TRACKER_STORAGE_BACKEND", "file")

    # Root directory for every persisted file
    STORAGE_DIR: str = _str("TRACKER_STORAGE_DIR", "./data")

    # SQLite database file name (relative to STORAGE_DIR)
    DB_FILENAME: str = _str("TRACKER_STORAGE_DB_FILENAME", "signatures.db")

    # Lock acquisition: total wait, first backoff, backoff cap (seconds)
    LOCK_TIMEOUT_SECONDS: float = _float("TRACKER_STORAGE_LOCK_TIMEOUT_SECONDS", 5.0)
    LOCK_INITIAL_BACKOFF_SECONDS: float = _float("TRACKER_STORAGE_LOCK_INITIAL_BACKOFF_SECONDS", 0.01)
    LOCK_MAX_BACKOFF_SECONDS: float = _float("TRACKER_STORAGE_LOCK_MAX_BACKOFF_SECONDS", 0.2)

    # Lock files older than this are considered abandoned
    LOCK_STALE_SECONDS: float = _float("TRACKER_STORAGE_LOCK_STALE_SECONDS", 30.0)

    # Full snapshot backup every N successful writes
    BACKUP_EVERY_WRITES: int = _int("TRACKER_STORAGE_BACKUP_EVERY_WRITES", 10)

    # SQLite busy timeout (seconds)
    DB_TIMEOUT_SECONDS: float = _float("TRACKER_STORAGE_DB_TIMEOUT_SECONDS", 5.0)

    # Concurrent connections allowed per side; reads dominate
    READ_POOL_SIZE: int = _int("TRACKER_STORAGE_READ_POOL_SIZE", 10)
    WRITE_POOL_SIZE: int = _int("TRACKER_STORAGE_WRITE_POOL_SIZE", 4)
    POOL_TIMEOUT_SECONDS: float = _float("TRACKER_STORAGE_POOL_TIMEOUT_SECONDS", 2.0)


@dataclass(frozen=True)
class ValidationConfig:
    """Sample sanity bounds."""

    # Accept timestamps at most this far ahead of the server clock
    MAX_FUTURE_SKEW_MS: int = _int("TRACKER_VALIDATION_MAX_FUTURE_SKEW_MS", 60_000)

    # Reject timestamps older than this
    MAX_STALENESS_MS: int = _int("TRACKER_VALIDATION_MAX_STALENESS_MS", 86_400_000)

    # Exclusive upper bound for a count
    MAX_COUNT: int = _int("TRACKER_VALIDATION_MAX_COUNT", 50_000_000)

    # Implied signatures/second above this is rejected
    MAX_RATE_PER_SECOND: float = _float("TRACKER_VALIDATION_MAX_RATE_PER_SECOND", 1000.0)

    # A decreasing count is only accepted after this much silence
    DECREASE_GRACE_MS: int = _int("TRACKER_VALIDATION_DECREASE_GRACE_MS", 300_000)


@dataclass(frozen=True)
class DedupConfig:
    """Duplicate suppression."""

    # Same count within this distance of the last write is a duplicate
    PROXIMITY_MS: int = _int("TRACKER_DEDUP_PROXIMITY_MS", 2_000)

    # Lifetime of a per-second signature
    WINDOW_MS: int = _int("TRACKER_DEDUP_WINDOW_MS", 10_000)

    # Signature map size that triggers pruning
    PRUNE_THRESHOLD: int = _int("TRACKER_DEDUP_PRUNE_THRESHOLD", 500)


@dataclass(frozen=True)
class RateLimitConfig:
    """Per-caller and global write quotas."""

    WINDOW_MS: int = _int("TRACKER_RATE_LIMIT_WINDOW_MS", 60_000)
    MAX_REQUESTS: int = _int("TRACKER_RATE_LIMIT_MAX_REQUESTS", 120)

    # 0 disables the global ceiling
    GLOBAL_MAX_REQUESTS: int = _int("TRACKER_RATE_LIMIT_GLOBAL_MAX_REQUESTS", 1000)

    # Caller map size that triggers pruning
    PRUNE_THRESHOLD: int = _int("TRACKER_RATE_LIMIT_PRUNE_THRESHOLD", 2000)


@dataclass(frozen=True)
class RetentionConfig:
    """Raw tick retention and daily archival."""

    RETENTION_HOURS: float = _float("TRACKER_RETENTION_RETENTION_HOURS", 26.0)

    # Days with fewer ticks than this are not archived yet
    MIN_ARCHIVE_POINTS: int = _int("TRACKER_RETENTION_MIN_ARCHIVE_POINTS", 10)

    # Daily summaries older than this are pruned
    DAILY_HISTORY_DAYS: int = _int("TRACKER_RETENTION_DAILY_HISTORY_DAYS", 30)

    # IANA zone name defining the calendar day
    TIMEZONE: str = _str("TRACKER_RETENTION_TIMEZONE", "Europe/Brussels")

    @property
    def retention_ms(self) -> int:
        return int(self.RETENTION_HOURS * 3_600_000)


@dataclass(frozen=True)
class AnalyticsConfig:
    """Rate windows and confidence thresholds."""

    PER_SECOND_WINDOW_MS: int = _int("TRACKER_ANALYTICS_PER_SECOND_WINDOW_MS", 30_000)
    PER_MINUTE_WINDOW_MS: int = _int("TRACKER_ANALYTICS_PER_MINUTE_WINDOW_MS", 300_000)
    PER_HOUR_WINDOW_MS: int = _int("TRACKER_ANALYTICS_PER_HOUR_WINDOW_MS", 3_600_000)
    PER_DAY_WINDOW_MS: int = _int("TRACKER_ANALYTICS_PER_DAY_WINDOW_MS", 86_400_000)

    # Data points needed for the "reliable" / "stabilizing" labels
    RELIABLE_POINTS: int = _int("TRACKER_ANALYTICS_RELIABLE_POINTS", 10)
    STABILIZING_POINTS: int = _int("TRACKER_ANALYTICS_STABILIZING_POINTS", 3)


@dataclass(frozen=True)
class CacheConfig:
    """Response cache."""

    TTL_SECONDS: float = _float("TRACKER_CACHE_TTL_SECONDS", 5.0)
    MAX_ENTRIES: int = _int("TRACKER_CACHE_MAX_ENTRIES", 100)

    # Fraction of requests that trigger expired-entry cleanup
    CLEANUP_PROBABILITY: float = _float("TRACKER_CACHE_CLEANUP_PROBABILITY", 0.1)

    # Coarse time bucket folded into the ETag
    ETAG_BUCKET_SECONDS: int = _int("TRACKER_CACHE_ETAG_BUCKET_SECONDS", 10)

    MAX_AGE_SECONDS: int = _int("TRACKER_CACHE_MAX_AGE_SECONDS", 5)


@dataclass(frozen=True)
class ForecastConfig:
    """Holt-Winters smoothing constants."""

    ALPHA: float = _float("TRACKER_FORECAST_ALPHA", 0.3)
    BETA: float = _float("TRACKER_FORECAST_BETA", 0.1)
    GAMMA: float = _float("TRACKER_FORECAST_GAMMA", 0.3)

    # Weekly seasonality on daily data
    SEASON_PERIOD: int = _int("TRACKER_FORECAST_SEASON_PERIOD", 7)

    HORIZON_DAYS: int = _int("TRACKER_FORECAST_HORIZON_DAYS", 30)
    CONFIDENCE_LEVEL: float = _float("TRACKER_FORECAST_CONFIDENCE_LEVEL", 0.95)


@dataclass(frozen=True)
class APIConfig:
    """Query defaults."""

    MAX_TICKS: int = _int("TRACKER_API_MAX_TICKS", 5000)

    # Fraction of requests that run housekeeping
    HOUSEKEEPING_PROBABILITY: float = _float("TRACKER_API_HOUSEKEEPING_PROBABILITY", 0.05)

    # Retry-After sent with 503 responses
    UNAVAILABLE_RETRY_AFTER_SECONDS: int = _int("TRACKER_API_UNAVAILABLE_RETRY_AFTER_SECONDS", 5)


_GROUPS = {
    "storage": ("STORAGE", StorageConfig),
    "validation": ("VALIDATION", ValidationConfig),
    "dedup": ("DEDUP", DedupConfig),
    "rate_limit": ("RATE_LIMIT", RateLimitConfig),
    "retention": ("RETENTION", RetentionConfig),
    "analytics": ("ANALYTICS", AnalyticsConfig),
    "cache": ("CACHE", CacheConfig),
    "forecast": ("FORECAST", ForecastConfig),
    "api": ("API", APIConfig),
}


def _build_group(section: str, cls, values: Optional[Dict[str, Any]]):
    """Instantiate a config group, letting mapping values override defaults."""
    if not values:
        return cls()

    known = {f.name: f for f in fields(cls)}
    kwargs = {}
    for key, value in values.items():
        name = str(key).upper()
        if name not in known:
            logger.warning(f"Unknown config key '{section}.{key}' ignored")
            continue
        kwargs[name] = value
    return cls(**kwargs)


@dataclass(frozen=True)
class TrackerConfig:
    """
    Immutable configuration container with all config groups.

    Access via config.GROUP.CONSTANT, e.g.:
        config.RETENTION.RETENTION_HOURS
        config.CACHE.TTL_SECONDS
    """

    STORAGE: StorageConfig = field(default_factory=StorageConfig)
    VALIDATION: ValidationConfig = field(default_factory=ValidationConfig)
    DEDUP: DedupConfig = field(default_factory=DedupConfig)
    RATE_LIMIT: RateLimitConfig = field(default_factory=RateLimitConfig)
    RETENTION: RetentionConfig = field(default_factory=RetentionConfig)
    ANALYTICS: AnalyticsConfig = field(default_factory=AnalyticsConfig)
    CACHE: CacheConfig = field(default_factory=CacheConfig)
    FORECAST: ForecastConfig = field(default_factory=ForecastConfig)
    API: APIConfig = field(default_factory=APIConfig)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "TrackerConfig":
        """
        Build configuration from a nested mapping (usually parsed YAML).

        Example:
            >>> TrackerConfig.from_dict({"retention": {"retention_hours": 30}})
        """
        data = data or {}
        for section in data:
            if section not in _GROUPS:
                logger.warning(f"Unknown config section '{section}' ignored")

        kwargs = {
            attr: _build_group(section, group_cls, data.get(section))
            for section, (attr, group_cls) in _GROUPS.items()
        }
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        """Export all config as dict (useful for debugging)."""
        return {
            section: asdict(getattr(self, attr))
            for section, (attr, _) in _GROUPS.items()
        }
