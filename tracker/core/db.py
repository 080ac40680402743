"""
Relational Tick Store
=====================

SQLite backend with the same semantics as the flat-file store.

Design Goals
------------
    1. **One transaction per write**: upsert + retention delete commit
       together, so a failure never leaves half-applied state
    2. **No no-op writes**: ON CONFLICT ... DO UPDATE only fires when the
       count actually changed
    3. **WAL mode** so readers don't block the writer
    4. **Bounded concurrency**: separate read/write slots with a timeout
       instead of unbounded connection growth
    5. **Lazy schema**: CREATE IF NOT EXISTS runs once per store instance

Schema
------
    signatures(ts INTEGER PRIMARY KEY, count INTEGER NOT NULL, created_at REAL)
        idx_signatures_ts_desc ON signatures(ts DESC)

    daily_stats(date TEXT PRIMARY KEY, start_count, end_count,
                signatures_collected, data_points, updated_at)

Error Mapping
-------------
    sqlite3.OperationalError (locked, busy, cannot open) -> StorageUnavailable
    sqlite3.IntegrityError                                -> logged, no-op
    other sqlite3.DatabaseError (not a database)         -> StorageCorrupt
    slot acquisition timeout / deadline exceeded           -> StorageUnavailable

Usage
-----
    store = SQLiteTickStore(storage_dir / "signatures.db", retention_ms)
    store.append(Tick(ts=now, count=123456))

    with store.db.connection() as conn:
        rows = conn.execute("SELECT ts, count FROM signatures").fetchall()
"""

import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Union

from .config import StorageConfig
from .errors import StorageCorrupt, StorageUnavailable
from .models import DailyStat, Tick
from .store import StoreSummary, TickStore, check_deadline, now_ms as _now_ms, remaining

logger = logging.getLogger("Tracker.DB")

SQLITE_PRAGMAS = {
    "journal_mode": "WAL",          # Write-Ahead Logging for concurrency
    "synchronous": "NORMAL",        # Balance safety and speed
    "temp_store": "MEMORY",
}

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS signatures (
        ts INTEGER PRIMARY KEY,
        count INTEGER NOT NULL,
        created_at REAL NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_signatures_ts_desc ON signatures(ts DESC)",
    """
    CREATE TABLE IF NOT EXISTS daily_stats (
        date TEXT PRIMARY KEY,
        start_count INTEGER NOT NULL,
        end_count INTEGER NOT NULL,
        signatures_collected INTEGER NOT NULL,
        data_points INTEGER NOT NULL,
        updated_at REAL NOT NULL
    )
    """,
)

UPSERT_TICK = """
    INSERT INTO signatures (ts, count, created_at)
    VALUES (?, ?, ?)
    ON CONFLICT(ts) DO UPDATE SET count = excluded.count
    WHERE signatures.count != excluded.count
"""

UPSERT_DAILY = """
    INSERT INTO daily_stats
        (date, start_count, end_count, signatures_collected, data_points, updated_at)
    VALUES (?, ?, ?, ?, ?, ?)
    ON CONFLICT(date) DO UPDATE SET
        start_count = excluded.start_count,
        end_count = excluded.end_count,
        signatures_collected = excluded.signatures_collected,
        data_points = excluded.data_points,
        updated_at = excluded.updated_at
"""


class TickDB:
    """
    Connection manager for the tick database.

    Hands out configured connections inside bounded read/write slots.
    Each operation opens its own connection, so the instance is safe to
    share between threads.
    """

    def __init__(
        self,
        db_path: Union[str, Path],
        timeout: float = 5.0,
        read_slots: int = 10,
        write_slots: int = 4,
        slot_timeout: float = 2.0,
    ):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.timeout = timeout
        self.slot_timeout = slot_timeout
        self._read_slots = threading.BoundedSemaphore(max(1, read_slots))
        self._write_slots = threading.BoundedSemaphore(max(1, write_slots))
        self._schema_lock = threading.Lock()
        self._schema_ready = False

    def _configure_connection(self, conn: sqlite3.Connection) -> None:
        """Apply standard pragmas to a new connection."""
        for pragma, value in SQLITE_PRAGMAS.items():
            try:
                conn.execute(f"PRAGMA {pragma} = {value}")
            except sqlite3.Error as e:
                logger.warning(f"Failed to set PRAGMA {pragma}: {e}")
        conn.row_factory = sqlite3.Row

    def get_connection(self, timeout: Optional[float] = None) -> sqlite3.Connection:
        """
        Open a configured connection. Caller closes it.

        Raises:
            StorageUnavailable: If the database cannot be opened
        """
        try:
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.timeout if timeout is None else timeout,
                check_same_thread=False,
            )
            self._configure_connection(conn)
            return conn
        except sqlite3.Error as e:
            logger.error(f"Failed to connect to database: {e}")
            raise StorageUnavailable(f"Cannot connect to {self.db_path.name}: {e}") from e

    def ensure_schema(self) -> None:
        """Create tables and indexes once per instance."""
        if self._schema_ready:
            return
        with self._schema_lock:
            if self._schema_ready:
                return
            conn = self.get_connection()
            try:
                for statement in SCHEMA:
                    conn.execute(statement)
                conn.commit()
            except sqlite3.OperationalError as e:
                raise StorageUnavailable(f"Schema setup failed: {e}") from e
            except sqlite3.DatabaseError as e:
                logger.error(f"Database file unreadable: {e}")
                raise StorageCorrupt(f"Schema setup failed: {e}", str(self.db_path)) from e
            finally:
                conn.close()
            self._schema_ready = True
            logger.info(f"Tick schema ready: {self.db_path}")

    @contextmanager
    def connection(
        self,
        write: bool = False,
        deadline: Optional[float] = None,
    ) -> Iterator[sqlite3.Connection]:
        """
        Context manager for a connection inside a read or write slot.

        Commits on success, rolls back on error. sqlite3.OperationalError
        (locked database, I/O trouble) surfaces as StorageUnavailable; a
        damaged or foreign file surfaces as StorageCorrupt.
        """
        self.ensure_schema()
        slots = self._write_slots if write else self._read_slots
        if not slots.acquire(timeout=remaining(deadline, self.slot_timeout)):
            raise StorageUnavailable(
                f"No free {'write' if write else 'read'} connection", retry_after=1
            )
        try:
            check_deadline(deadline, "database access")
            conn = self.get_connection(timeout=remaining(deadline, self.timeout))
            try:
                yield conn
                conn.commit()
            except sqlite3.OperationalError as e:
                conn.rollback()
                logger.warning(f"Database unavailable: {e}")
                raise StorageUnavailable(f"Database unavailable: {e}") from e
            except sqlite3.IntegrityError:
                conn.rollback()
                raise
            except sqlite3.DatabaseError as e:
                conn.rollback()
                logger.error(f"Database file unreadable: {e}")
                raise StorageCorrupt(f"Database unreadable: {e}", str(self.db_path)) from e
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()
        finally:
            slots.release()

    def table_exists(self, table_name: str) -> bool:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table' AND name=?",
                (table_name,),
            ).fetchone()
        return row is not None

    def checkpoint(self) -> None:
        """Force a WAL checkpoint to keep the WAL file small."""
        try:
            with self.connection(write=True) as conn:
                conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
                logger.debug("WAL checkpoint completed")
        except StorageUnavailable as e:
            logger.warning(f"Checkpoint failed: {e}")


class SQLiteTickStore(TickStore):
    """
    Relational implementation of TickStore.

    Example:
        >>> store = SQLiteTickStore("/var/lib/tracker/signatures.db", retention_ms)
        >>> store.append(Tick(ts=now, count=1234))
        True
        >>> store.append(Tick(ts=now, count=1234))     # unchanged count
        False
    """

    def __init__(self, db: Union[TickDB, str, Path], retention_ms: int):
        super().__init__(retention_ms)
        self.db = db if isinstance(db, TickDB) else TickDB(db)
        logger.info(f"SQLiteTickStore initialized: {self.db.db_path}")

    @classmethod
    def from_config(cls, config: StorageConfig, retention_ms: int) -> "SQLiteTickStore":
        db = TickDB(
            Path(config.STORAGE_DIR) / config.DB_FILENAME,
            timeout=config.DB_TIMEOUT_SECONDS,
            read_slots=config.READ_POOL_SIZE,
            write_slots=config.WRITE_POOL_SIZE,
            slot_timeout=config.POOL_TIMEOUT_SECONDS,
        )
        return cls(db, retention_ms)

    def append(self, tick: Tick, now_ms: Optional[int] = None,
               deadline: Optional[float] = None) -> bool:
        now_ms = _now_ms() if now_ms is None else now_ms
        cutoff = now_ms - self.retention_ms

        try:
            with self.db.connection(write=True, deadline=deadline) as conn:
                upserted = conn.execute(
                    UPSERT_TICK, (tick.ts, tick.count, time.time())
                ).rowcount
                cleaned = conn.execute(
                    "DELETE FROM signatures WHERE ts < ?", (cutoff,)
                ).rowcount
        except sqlite3.IntegrityError as e:
            logger.warning(f"Integrity error on ts={tick.ts}, treated as no-op: {e}")
            return False

        if cleaned > 0:
            logger.info(f"Cleaned {cleaned} old records")
        return upserted > 0 and tick.ts >= cutoff

    def read_all(self, since_ms: Optional[int] = None,
                 deadline: Optional[float] = None) -> List[Tick]:
        with self.db.connection(deadline=deadline) as conn:
            if since_ms is None:
                rows = conn.execute(
                    "SELECT ts, count FROM signatures ORDER BY ts ASC"
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT ts, count FROM signatures WHERE ts > ? ORDER BY ts ASC",
                    (since_ms,),
                ).fetchall()
        return [Tick(ts=row["ts"], count=row["count"]) for row in rows]

    def prune_older_than(self, cutoff_ms: int, deadline: Optional[float] = None) -> int:
        with self.db.connection(write=True, deadline=deadline) as conn:
            removed = conn.execute(
                "DELETE FROM signatures WHERE ts < ?", (cutoff_ms,)
            ).rowcount
        if removed:
            logger.info(f"Pruned {removed} ticks older than {cutoff_ms}")
        return removed

    def summary(self, deadline: Optional[float] = None) -> StoreSummary:
        with self.db.connection(deadline=deadline) as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n, MIN(ts) AS oldest, MAX(ts) AS newest FROM signatures"
            ).fetchone()
        return row["n"], row["oldest"], row["newest"]

    def newest(self) -> Optional[Tick]:
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT ts, count FROM signatures ORDER BY ts DESC LIMIT 1"
            ).fetchone()
        return Tick(ts=row["ts"], count=row["count"]) if row else None

    def upsert_daily_stat(self, stat: DailyStat, deadline: Optional[float] = None) -> None:
        with self.db.connection(write=True, deadline=deadline) as conn:
            conn.execute(UPSERT_DAILY, (
                stat.date,
                stat.start_count,
                stat.end_count,
                stat.signatures_collected,
                stat.data_points,
                time.time(),
            ))

    def read_daily_stats(self, deadline: Optional[float] = None) -> List[DailyStat]:
        with self.db.connection(deadline=deadline) as conn:
            rows = conn.execute(
                "SELECT date, start_count, end_count, data_points "
                "FROM daily_stats ORDER BY date ASC"
            ).fetchall()
        return [
            DailyStat(
                date=row["date"],
                start_count=row["start_count"],
                end_count=row["end_count"],
                data_points=row["data_points"],
            )
            for row in rows
        ]

    def prune_daily_stats(self, before_date: str, deadline: Optional[float] = None) -> int:
        with self.db.connection(write=True, deadline=deadline) as conn:
            removed = conn.execute(
                "DELETE FROM daily_stats WHERE date < ?", (before_date,)
            ).rowcount
        if removed:
            logger.info(f"Pruned {removed} daily stats before {before_date}")
        return removed

    def close(self) -> None:
        self.db.checkpoint()
