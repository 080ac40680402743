"""
Tests for the TickStore backends.

Behaviour shared by both backends runs through the parametrized `store`
fixture; backend specifics live in their own classes.
"""

import json
import threading
import time

import pytest

from conftest import HOUR, NOW
from tracker.core.config import TrackerConfig
from tracker.core.db import SQLiteTickStore
from tracker.core.errors import StorageCorrupt, StorageUnavailable
from tracker.core.file_store import FileTickStore
from tracker.core.locking import FileLock
from tracker.core.models import DailyStat, Tick
from tracker.core.store import create_store


class TestTickStoreContract:

    def test_read_all_is_sorted_and_unique(self, store):
        for ts, count in [(NOW - 3000, 10), (NOW - 1000, 30), (NOW - 2000, 20), (NOW - 1000, 31)]:
            store.append(Tick(ts, count), now_ms=NOW)

        ticks = store.read_all()
        assert [t.ts for t in ticks] == [NOW - 3000, NOW - 2000, NOW - 1000]
        assert ticks[-1].count == 31

    def test_append_reports_change(self, store):
        assert store.append(Tick(NOW, 100), now_ms=NOW) is True
        assert store.append(Tick(NOW, 100), now_ms=NOW) is False
        assert store.append(Tick(NOW, 105), now_ms=NOW) is True
        assert store.read_all() == [Tick(NOW, 105)]

    def test_append_prunes_outside_retention(self, store):
        retention = store.retention_ms
        old = NOW - retention - 1
        store.append(Tick(old, 1), now_ms=old)
        store.append(Tick(NOW, 2), now_ms=NOW)

        ticks = store.read_all()
        assert ticks == [Tick(NOW, 2)]
        assert all(t.ts >= NOW - retention for t in ticks)

    def test_tick_older_than_retention_is_not_kept(self, store):
        assert store.append(Tick(NOW - store.retention_ms - 1, 5), now_ms=NOW) is False
        assert store.read_all() == []

    def test_read_all_since(self, store):
        for i in range(5):
            store.append(Tick(NOW - 4000 + i * 1000, i), now_ms=NOW)
        assert [t.count for t in store.read_all(since_ms=NOW - 2000)] == [3, 4]

    def test_prune_older_than(self, store):
        for i in range(4):
            store.append(Tick(NOW - 3 * HOUR + i * HOUR, i), now_ms=NOW)
        assert store.prune_older_than(NOW - HOUR) == 2
        assert [t.count for t in store.read_all()] == [2, 3]

    def test_summary_and_newest(self, store):
        assert store.summary() == (0, None, None)
        assert store.newest() is None

        store.append(Tick(NOW - 5000, 1), now_ms=NOW)
        store.append(Tick(NOW, 9), now_ms=NOW)
        assert store.summary() == (2, NOW - 5000, NOW)
        assert store.newest() == Tick(NOW, 9)

    def test_daily_stats_upsert_by_date(self, store):
        store.upsert_daily_stat(DailyStat("2024-06-09", 100, 400, 12))
        store.upsert_daily_stat(DailyStat("2024-06-08", 50, 100, 8))
        store.upsert_daily_stat(DailyStat("2024-06-09", 100, 450, 13))

        stats = store.read_daily_stats()
        assert [s.date for s in stats] == ["2024-06-08", "2024-06-09"]
        assert stats[1].end_count == 450
        assert stats[1].signatures_collected == 350

    def test_prune_daily_stats(self, store):
        for day in ("2024-05-01", "2024-05-15", "2024-06-01"):
            store.upsert_daily_stat(DailyStat(day, 0, 10, 5))
        assert store.prune_daily_stats("2024-05-15") == 1
        assert [s.date for s in store.read_daily_stats()] == ["2024-05-15", "2024-06-01"]

    def test_expired_deadline_is_unavailable(self, store):
        with pytest.raises(StorageUnavailable):
            store.read_all(deadline=0.0)

    def test_concurrent_writers_converge_on_one_tick(self, store):
        counts = list(range(100, 108))
        failures = []

        def writer(count):
            for _ in range(20):
                try:
                    store.append(Tick(NOW, count), now_ms=NOW)
                    return
                except StorageUnavailable:
                    time.sleep(0.01)
            failures.append(count)

        threads = [threading.Thread(target=writer, args=(c,)) for c in counts]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        ticks = store.read_all()
        assert failures == []
        assert len(ticks) == 1
        assert ticks[0].ts == NOW
        assert ticks[0].count in counts


class TestFileTickStore:

    def test_files_on_disk(self, file_store):
        file_store.append(Tick(NOW, 7), now_ms=NOW)
        raw = json.loads(file_store.ticks_path.read_text())
        assert raw == [{"ts": NOW, "count": 7}]
        assert file_store.ticks_path.name == "tick-history.json"
        assert file_store.backup_path.exists()
        assert not (file_store.storage_dir / "tick-history.lock").exists()

    def test_no_temp_files_left_behind(self, file_store):
        for i in range(3):
            file_store.append(Tick(NOW + i, i), now_ms=NOW)
        leftovers = [p for p in file_store.storage_dir.iterdir() if p.suffix == ".tmp"]
        assert leftovers == []

    def test_corrupt_primary_falls_back_to_backup(self, file_store):
        file_store.append(Tick(NOW - 1000, 1), now_ms=NOW)
        file_store.append(Tick(NOW, 2), now_ms=NOW)
        file_store.ticks_path.write_text("{not json")

        assert file_store.read_all() == [Tick(NOW - 1000, 1), Tick(NOW, 2)]

    def test_corrupt_primary_without_backup_is_empty(self, tmp_path):
        store = FileTickStore(tmp_path, retention_ms=26 * HOUR, backup_every=100)
        store.ticks_path.write_text("[{\"ts\": 1, ")
        assert store.read_all() == []

        # Next write recovers the file
        assert store.append(Tick(NOW, 3), now_ms=NOW) is True
        assert store.read_all() == [Tick(NOW, 3)]

    def test_malformed_records_are_skipped(self, file_store):
        file_store.ticks_path.write_text(json.dumps([
            {"ts": NOW, "count": 5},
            {"ts": "x", "count": 1},
            {"ts": NOW - 10, "count": True},
            "garbage",
            {"ts": NOW - 20, "count": 4},
        ]))
        assert file_store.read_all() == [Tick(NOW - 20, 4), Tick(NOW, 5)]

    def test_busy_lock_leaves_state_untouched(self, tmp_path):
        lock_path = tmp_path / "tick-history.lock"
        store = FileTickStore(
            tmp_path, retention_ms=26 * HOUR, lock=FileLock(lock_path, timeout=0.05)
        )
        store.append(Tick(NOW - 1000, 1), now_ms=NOW)

        lock_path.write_text("someone else\n")
        with pytest.raises(StorageUnavailable):
            store.append(Tick(NOW, 2), now_ms=NOW)

        assert store.read_all() == [Tick(NOW - 1000, 1)]


class TestSQLiteTickStore:

    def test_schema_created_lazily(self, sqlite_store):
        assert sqlite_store.db.table_exists("signatures")
        assert sqlite_store.db.table_exists("daily_stats")

    def test_reopen_keeps_data(self, tmp_path):
        path = tmp_path / "ticks.db"
        first = SQLiteTickStore(path, retention_ms=26 * HOUR)
        first.append(Tick(NOW, 11), now_ms=NOW)
        first.close()

        second = SQLiteTickStore(path, retention_ms=26 * HOUR)
        assert second.read_all() == [Tick(NOW, 11)]
        second.close()

    def test_foreign_file_is_reported_corrupt(self, tmp_path):
        path = tmp_path / "ticks.db"
        path.write_bytes(b"this is not a database " * 200)
        store = SQLiteTickStore(path, retention_ms=26 * HOUR)

        with pytest.raises(StorageCorrupt):
            store.read_all()
        with pytest.raises(StorageCorrupt):
            store.append(Tick(NOW, 1), now_ms=NOW)


class TestCreateStore:

    def test_file_backend(self, tmp_path):
        config = TrackerConfig.from_dict({"storage": {"backend": "file", "storage_dir": str(tmp_path)}})
        assert isinstance(create_store(config), FileTickStore)

    def test_sqlite_backend(self, tmp_path):
        config = TrackerConfig.from_dict({"storage": {"backend": "sqlite", "storage_dir": str(tmp_path)}})
        store = create_store(config)
        assert isinstance(store, SQLiteTickStore)
        assert store.db.db_path == tmp_path / "signatures.db"
        store.close()

    def test_unknown_backend(self, tmp_path):
        config = TrackerConfig.from_dict({"storage": {"backend": "redis", "storage_dir": str(tmp_path)}})
        with pytest.raises(ValueError):
            create_store(config)
