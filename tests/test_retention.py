"""Tests for daily archival and retention pruning."""

from conftest import DAY_START, HOUR, NOW
from tracker.core.models import DailyStat, Tick
from tracker.core.retention import RetentionManager, summarize_day


def _seed_yesterday(store):
    for ts, count in [
        (DAY_START - 10 * HOUR, 1000),
        (DAY_START - 5 * HOUR, 1200),
        (DAY_START - HOUR, 1280),
        (DAY_START + HOUR, 1300),
    ]:
        store.append(Tick(ts, count), now_ms=NOW)


class TestSummarizeDay:

    def test_first_and_last_count(self):
        stat = summarize_day([Tick(1, 10), Tick(2, 15), Tick(3, 40)], "2024-06-09")
        assert stat == DailyStat("2024-06-09", 10, 40, 3)
        assert stat.signatures_collected == 30

    def test_empty_day(self):
        assert summarize_day([], "2024-06-09") is None


class TestRetentionManager:

    def test_yesterday_archived_on_write(self, store, config):
        _seed_yesterday(store)
        manager = RetentionManager(store, config.RETENTION)

        result = manager.on_write(NOW)

        assert result.archived == DailyStat("2024-06-09", 1000, 1280, 3)
        assert store.read_daily_stats() == [DailyStat("2024-06-09", 1000, 1280, 3)]

    def test_archival_is_idempotent(self, store, config):
        _seed_yesterday(store)
        manager = RetentionManager(store, config.RETENTION)
        manager.on_write(NOW)
        first = store.read_daily_stats()

        again = manager.archive_day("2024-06-09")
        assert again == first[0]
        assert store.read_daily_stats() == first

        # Already archived: later writes are no-ops for archival
        assert manager.on_write(NOW + 1000).archived is None
        assert RetentionManager(store, config.RETENTION).on_write(NOW).archived is None

    def test_sparse_day_is_deferred(self, store, config):
        store.append(Tick(DAY_START - HOUR, 500), now_ms=NOW)
        store.append(Tick(DAY_START + HOUR, 520), now_ms=NOW)
        manager = RetentionManager(store, config.RETENTION)

        result = manager.on_write(NOW)

        assert result.deferred is True
        assert result.archived is None
        assert store.read_daily_stats() == []

    def test_nothing_to_archive_without_old_ticks(self, store, config):
        store.append(Tick(DAY_START + HOUR, 520), now_ms=NOW)
        result = RetentionManager(store, config.RETENTION).on_write(NOW)
        assert result.archived is None
        assert result.deferred is False

    def test_old_ticks_and_summaries_are_pruned(self, store, config):
        old = NOW - 27 * HOUR
        store.append(Tick(old, 10), now_ms=old)
        store.append(Tick(NOW - HOUR, 20), now_ms=old)
        store.upsert_daily_stat(DailyStat("2024-05-01", 0, 10, 5))
        store.upsert_daily_stat(DailyStat("2024-06-01", 0, 10, 5))

        result = RetentionManager(store, config.RETENTION).on_write(NOW)

        assert result.pruned_ticks == 1
        assert result.pruned_days == 1
        assert store.read_all() == [Tick(NOW - HOUR, 20)]
        assert [s.date for s in store.read_daily_stats()] == ["2024-06-01"]

    def test_settled_day_skips_storage(self, store, config, monkeypatch):
        _seed_yesterday(store)
        manager = RetentionManager(store, config.RETENTION)
        manager.on_write(NOW)

        def untouchable(*args, **kwargs):
            raise AssertionError("store accessed after the day was settled")

        for name in ("read_all", "read_daily_stats", "prune_older_than", "prune_daily_stats"):
            monkeypatch.setattr(store, name, untouchable)

        assert manager.on_write(NOW + 1000, written_ts=NOW + 1000).archived is None

    def test_late_tick_for_yesterday_is_archived(self, store, config):
        store.append(Tick(DAY_START + HOUR, 1300), now_ms=NOW)
        manager = RetentionManager(store, config.RETENTION)
        assert manager.on_write(NOW).archived is None

        store.append(Tick(DAY_START - 2 * HOUR, 1200), now_ms=NOW)
        store.append(Tick(DAY_START - HOUR, 1250), now_ms=NOW)
        result = manager.on_write(NOW, written_ts=DAY_START - HOUR)

        assert result.archived == DailyStat("2024-06-09", 1200, 1250, 2)

    def test_expired_deadline_leaves_archival_for_next_write(self, store, config):
        _seed_yesterday(store)
        manager = RetentionManager(store, config.RETENTION)

        assert manager.on_write(NOW, deadline=0.0).archived is None
        assert store.read_daily_stats() == []
        assert manager.on_write(NOW).archived == DailyStat("2024-06-09", 1000, 1280, 3)
