"""
Tick Store Interface
====================

Capability interface every persistence backend implements, plus the
factory that picks one from configuration at startup. Retention,
analytics and the response cache depend only on this interface.

Backends
--------
    file:    FileTickStore   - locked JSON files under STORAGE_DIR
    sqlite:  SQLiteTickStore - relational table with upsert semantics

Guarantees
----------
    - read_all() returns ticks strictly ascending by ts, unique by ts
    - append() is an upsert by ts: last writer wins on count
    - a failed append leaves previously persisted state untouched
    - transient failures raise StorageUnavailable; corrupt data is
      recovered locally and never raised to the request path
"""

import logging
import time
from abc import ABC, abstractmethod
from typing import List, Optional, Tuple

from .config import StorageConfig, TrackerConfig
from .errors import StorageUnavailable
from .models import DailyStat, Tick

logger = logging.getLogger("Tracker.Store")

# (total ticks, oldest ts, newest ts)
StoreSummary = Tuple[int, Optional[int], Optional[int]]


def now_ms() -> int:
    return int(time.time() * 1000)


def check_deadline(deadline: Optional[float], operation: str) -> None:
    """Raise StorageUnavailable once a time.monotonic() deadline has passed."""
    if deadline is not None and time.monotonic() >= deadline:
        raise StorageUnavailable(f"Deadline exceeded before {operation}", retry_after=1)


def remaining(deadline: Optional[float], default: float) -> float:
    """Seconds left before deadline, capped at default."""
    if deadline is None:
        return default
    return max(0.0, min(default, deadline - time.monotonic()))


class TickStore(ABC):
    """Durable store for ticks and daily summaries."""

    def __init__(self, retention_ms: int):
        self.retention_ms = retention_ms

    @abstractmethod
    def append(self, tick: Tick, now_ms: Optional[int] = None,
               deadline: Optional[float] = None) -> bool:
        """
        Upsert a tick and prune entries older than the retention window.

        Returns:
            True if stored state changed, False for a no-op
        """

    @abstractmethod
    def read_all(self, since_ms: Optional[int] = None,
                 deadline: Optional[float] = None) -> List[Tick]:
        """Ticks ascending by ts; only ts > since_ms when given."""

    @abstractmethod
    def prune_older_than(self, cutoff_ms: int, deadline: Optional[float] = None) -> int:
        """Delete ticks with ts < cutoff_ms. Returns number removed."""

    @abstractmethod
    def summary(self, deadline: Optional[float] = None) -> StoreSummary:
        """Cheap fingerprint inputs: (count, oldest ts, newest ts)."""

    @abstractmethod
    def upsert_daily_stat(self, stat: DailyStat, deadline: Optional[float] = None) -> None:
        """Insert or replace the summary for stat.date."""

    @abstractmethod
    def read_daily_stats(self, deadline: Optional[float] = None) -> List[DailyStat]:
        """Daily summaries ascending by date."""

    @abstractmethod
    def prune_daily_stats(self, before_date: str, deadline: Optional[float] = None) -> int:
        """Delete summaries with date < before_date (YYYY-MM-DD)."""

    def newest(self) -> Optional[Tick]:
        ticks = self.read_all()
        return ticks[-1] if ticks else None

    def close(self) -> None:
        """Release resources. Default: nothing to release."""


def create_store(config: TrackerConfig) -> TickStore:
    """
    Build the backend named by config.STORAGE.BACKEND.

    Raises:
        ValueError: Unknown backend name
    """
    storage: StorageConfig = config.STORAGE
    retention_ms = config.RETENTION.retention_ms
    backend = storage.BACKEND.lower()

    if backend == "file":
        from .file_store import FileTickStore
        store = FileTickStore.from_config(storage, retention_ms)
    elif backend in ("sqlite", "db", "relational"):
        from .db import SQLiteTickStore
        store = SQLiteTickStore.from_config(storage, retention_ms)
    else:
        raise ValueError(f"Unknown storage backend: {storage.BACKEND}")

    logger.info(f"Tick store ready: {type(store).__name__} (retention {retention_ms // 3_600_000}h)")
    return store
