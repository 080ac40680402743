"""
Flat-File Tick Store
====================

JSON-file backend guarded by an exclusive lock file.

Layout (under STORAGE_DIR)
--------------------------
    tick-history.json          primary store, list of {"ts", "count"}
    tick-history.backup.json   full snapshot, refreshed every N writes
    daily-stats.json           archived DailyStat records
    tick-history.lock          transient lock file

Write Protocol
--------------
    1. acquire the lock (bounded wait, StorageUnavailable on timeout)
    2. read the full store (backup fallback on corruption)
    3. upsert the tick by ts, prune ticks older than the retention cutoff
    4. write to a temporary file in the same directory, fsync, rename
       over the target; a partial file is never renamed
    5. every BACKUP_EVERY_WRITES writes, snapshot the result to the backup

Corruption
----------
    An unreadable primary falls back to the backup; if that also fails
    the store behaves as empty. Either way it is logged, not raised.
"""

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, List, Optional, Union

from .config import StorageConfig
from .errors import StorageCorrupt, StorageUnavailable
from .locking import FileLock
from .models import DailyStat, Tick
from .store import StoreSummary, TickStore, check_deadline, now_ms as _now_ms

logger = logging.getLogger("Tracker.FileStore")

TICKS_FILENAME = "tick-history.json"
BACKUP_FILENAME = "tick-history.backup.json"
DAILY_STATS_FILENAME = "daily-stats.json"
LOCK_FILENAME = "tick-history.lock"


def _write_json_atomic(path: Path, data: Any) -> None:
    """Write data to a temp file beside path, then rename over it."""
    tmp_name: Optional[str] = None
    try:
        with tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            dir=str(path.parent),
            prefix=path.name + ".",
            suffix=".tmp",
            delete=False,
        ) as tmp:
            tmp_name = tmp.name
            json.dump(data, tmp, separators=(",", ":"))
            tmp.flush()
            os.fsync(tmp.fileno())
        os.replace(tmp_name, path)
        tmp_name = None
    except OSError as e:
        raise StorageUnavailable(f"Write failed for {path.name}: {e}") from e
    finally:
        if tmp_name is not None:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass


def _read_json(path: Path) -> Optional[Any]:
    """
    Load a JSON file.

    Returns:
        Parsed data, or None if the file does not exist

    Raises:
        StorageCorrupt: File exists but is not valid JSON
        StorageUnavailable: File exists but cannot be read
    """
    try:
        with path.open("r", encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        return None
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise StorageCorrupt(f"Cannot decode {path.name}: {e}", path=str(path)) from e
    except OSError as e:
        raise StorageUnavailable(f"Cannot read {path.name}: {e}") from e


def _parse_ticks(raw: Any, path: Path) -> List[Tick]:
    """Keep well-formed records, one per ts (last wins), ascending."""
    if not isinstance(raw, list):
        raise StorageCorrupt(f"{path.name} is not a list", path=str(path))
    by_ts = {}
    for item in raw:
        tick = Tick.from_dict(item)
        if tick is not None:
            by_ts[tick.ts] = tick
    return [by_ts[ts] for ts in sorted(by_ts)]


class FileTickStore(TickStore):
    """
    Locked flat-file implementation of TickStore.

    Example:
        >>> store = FileTickStore("/mnt/storage", retention_ms=26 * 3600 * 1000)
        >>> store.append(Tick(ts=now, count=1234))
        True
    """

    def __init__(
        self,
        storage_dir: Union[str, Path],
        retention_ms: int,
        backup_every: int = 10,
        lock: Optional[FileLock] = None,
    ):
        super().__init__(retention_ms)
        self.storage_dir = Path(storage_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        self.ticks_path = self.storage_dir / TICKS_FILENAME
        self.backup_path = self.storage_dir / BACKUP_FILENAME
        self.daily_path = self.storage_dir / DAILY_STATS_FILENAME
        self.lock = lock or FileLock(self.storage_dir / LOCK_FILENAME)
        self.backup_every = max(1, backup_every)
        self._writes = 0
        self._writes_lock = threading.Lock()
        logger.info(f"FileTickStore initialized: {self.storage_dir}")

    @classmethod
    def from_config(cls, config: StorageConfig, retention_ms: int) -> "FileTickStore":
        storage_dir = Path(config.STORAGE_DIR)
        lock = FileLock(
            storage_dir / LOCK_FILENAME,
            timeout=config.LOCK_TIMEOUT_SECONDS,
            initial_backoff=config.LOCK_INITIAL_BACKOFF_SECONDS,
            max_backoff=config.LOCK_MAX_BACKOFF_SECONDS,
            stale_seconds=config.LOCK_STALE_SECONDS,
        )
        return cls(storage_dir, retention_ms, config.BACKUP_EVERY_WRITES, lock)

    # ------------------------------------------------------------------
    # Ticks
    # ------------------------------------------------------------------

    def _load_ticks(self) -> List[Tick]:
        """Read the primary, falling back to the backup, then to empty."""
        try:
            raw = _read_json(self.ticks_path)
            return [] if raw is None else _parse_ticks(raw, self.ticks_path)
        except StorageCorrupt as e:
            logger.warning(f"Primary tick store unreadable, trying backup: {e}")

        try:
            raw = _read_json(self.backup_path)
            if raw is None:
                logger.error("No backup available, serving empty tick history")
                return []
            ticks = _parse_ticks(raw, self.backup_path)
            logger.warning(f"Served {len(ticks)} ticks from backup")
            return ticks
        except StorageCorrupt as e:
            logger.error(f"Backup also unreadable, serving empty tick history: {e}")
            return []

    def append(self, tick: Tick, now_ms: Optional[int] = None,
               deadline: Optional[float] = None) -> bool:
        now_ms = _now_ms() if now_ms is None else now_ms
        cutoff = now_ms - self.retention_ms

        with self.lock.acquire(deadline=deadline):
            check_deadline(deadline, "tick read")
            ticks = self._load_ticks()
            by_ts = {t.ts: t for t in ticks}

            existing = by_ts.get(tick.ts)
            changed = tick.ts >= cutoff and (existing is None or existing.count != tick.count)
            by_ts[tick.ts] = tick

            kept = [by_ts[ts] for ts in sorted(by_ts) if ts >= cutoff]
            pruned = len(by_ts) - len(kept)
            if not changed and not pruned:
                return False

            check_deadline(deadline, "tick write")
            payload = [t.to_dict() for t in kept]
            _write_json_atomic(self.ticks_path, payload)

            if pruned:
                logger.info(f"Pruned {pruned} ticks older than retention window")

            with self._writes_lock:
                self._writes += 1
                backup_due = self._writes % self.backup_every == 0
            if backup_due:
                _write_json_atomic(self.backup_path, payload)
                logger.debug(f"Backup snapshot written ({len(kept)} ticks)")

        return changed

    def read_all(self, since_ms: Optional[int] = None,
                 deadline: Optional[float] = None) -> List[Tick]:
        # Readers never see a partial file thanks to rename, so no lock here
        check_deadline(deadline, "tick read")
        ticks = self._load_ticks()
        if since_ms is not None:
            ticks = [t for t in ticks if t.ts > since_ms]
        return ticks

    def prune_older_than(self, cutoff_ms: int, deadline: Optional[float] = None) -> int:
        with self.lock.acquire(deadline=deadline):
            ticks = self._load_ticks()
            kept = [t for t in ticks if t.ts >= cutoff_ms]
            removed = len(ticks) - len(kept)
            if removed:
                _write_json_atomic(self.ticks_path, [t.to_dict() for t in kept])
                logger.info(f"Pruned {removed} ticks older than {cutoff_ms}")
            return removed

    def summary(self, deadline: Optional[float] = None) -> StoreSummary:
        ticks = self.read_all(deadline=deadline)
        if not ticks:
            return 0, None, None
        return len(ticks), ticks[0].ts, ticks[-1].ts

    # ------------------------------------------------------------------
    # Daily stats
    # ------------------------------------------------------------------

    def _load_daily(self) -> List[DailyStat]:
        try:
            raw = _read_json(self.daily_path)
        except StorageCorrupt as e:
            logger.error(f"Daily stats unreadable, treating as empty: {e}")
            return []
        if not isinstance(raw, list):
            return []
        stats = {}
        for item in raw:
            stat = DailyStat.from_dict(item)
            if stat is not None:
                stats[stat.date] = stat
        return [stats[d] for d in sorted(stats)]

    def upsert_daily_stat(self, stat: DailyStat, deadline: Optional[float] = None) -> None:
        with self.lock.acquire(deadline=deadline):
            stats = {s.date: s for s in self._load_daily()}
            stats[stat.date] = stat
            _write_json_atomic(
                self.daily_path, [stats[d].to_dict() for d in sorted(stats)]
            )

    def read_daily_stats(self, deadline: Optional[float] = None) -> List[DailyStat]:
        check_deadline(deadline, "daily stats read")
        return self._load_daily()

    def prune_daily_stats(self, before_date: str, deadline: Optional[float] = None) -> int:
        with self.lock.acquire(deadline=deadline):
            stats = self._load_daily()
            kept = [s for s in stats if s.date >= before_date]
            removed = len(stats) - len(kept)
            if removed:
                _write_json_atomic(self.daily_path, [s.to_dict() for s in kept])
                logger.info(f"Pruned {removed} daily stats before {before_date}")
            return removed
