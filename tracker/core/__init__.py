"""
Tick Engine for signature_tracker
=================================

Ingests (timestamp, count) samples of a petition's signature counter,
keeps a rolling window of raw ticks, compacts finished days into daily
summaries and serves rates, today's progress and a seasonal forecast.

Components
----------
    validation:
        Sanity bounds on incoming samples and query-parameter coercion.

    dedup:
        Duplicate suppression against the last accepted sample and
        per-second signatures, plus per-caller and global rate limits.

    store / file_store / db:
        TickStore interface with a locked JSON-file backend and a
        SQLite backend. Picked by create_store() from configuration.

    retention:
        Archives yesterday into a DailyStat and prunes ticks older than
        the retention window.

    rates:
        Per-second/minute/hour/day rates with confidence labels, and
        today's collection since local midnight.

    cache:
        Short-TTL query cache with ETag fingerprints.

    forecast:
        Additive Holt-Winters over daily collection totals.

    service:
        TickService wires everything into ingest() and query().

Files
-----
Created under STORAGE_DIR by the file backend:

    - tick-history.json:         retained ticks, ascending by ts
    - tick-history.backup.json:  periodic snapshot used for recovery
    - daily-stats.json:          archived daily summaries
    - tick-history.lock:         cross-process write lock

Usage Example
-------------
    from tracker.core import TickService, TrackerConfig, create_store

    config = TrackerConfig()
    service = TickService(create_store(config), config)

    response = service.ingest({"ts": 1718000000000, "count": 812345}, caller_key="10.0.0.4")
    response.status   # 204

See Also
--------
    - tracker/web/tick_api.py: HTTP endpoints
    - tracker/main.py: Process wiring
"""

from .cache import (
    CacheEntry,
    CacheStats,
    ResponseCache,
    compute_etag,
    etag_matches,
    normalize_query_key,
)
from .config import TrackerConfig
from .dedup import Deduplicator, RateLimiter, dedup_signature
from .errors import (
    ErrorCode,
    ForecastInsufficientData,
    RateLimited,
    StorageCorrupt,
    StorageUnavailable,
    TrackerError,
    api_error,
    api_error_from_exception,
    api_success,
)
from .forecast import ConfidenceBand, HoltWinters, TargetEstimate
from .models import DailyStat, RateSnapshot, Tick, TodayStats, WindowRate
from .rates import compute_rates, compute_today_stats, downsample
from .retention import RetentionManager
from .service import ApiResponse, TickService
from .store import TickStore, create_store
from .validation import TickValidator, ValidationError

__all__ = [
    # Config / errors
    "TrackerConfig",
    "ErrorCode",
    "TrackerError",
    "RateLimited",
    "StorageUnavailable",
    "StorageCorrupt",
    "ForecastInsufficientData",
    "ValidationError",
    "api_success",
    "api_error",
    "api_error_from_exception",
    # Model
    "Tick",
    "DailyStat",
    "WindowRate",
    "RateSnapshot",
    "TodayStats",
    # Write path
    "TickValidator",
    "Deduplicator",
    "RateLimiter",
    "dedup_signature",
    # Storage
    "TickStore",
    "create_store",
    "RetentionManager",
    # Read path
    "compute_rates",
    "compute_today_stats",
    "downsample",
    "ResponseCache",
    "CacheEntry",
    "CacheStats",
    "compute_etag",
    "etag_matches",
    "normalize_query_key",
    # Forecast
    "HoltWinters",
    "ConfidenceBand",
    "TargetEstimate",
    # Service
    "TickService",
    "ApiResponse",
]
