"""Tests for duplicate suppression and rate limiting."""

import pytest

from conftest import NOW
from tracker.core.config import DedupConfig, RateLimitConfig
from tracker.core.dedup import Deduplicator, RateLimiter, dedup_signature
from tracker.core.errors import RateLimited
from tracker.core.models import Tick


class TestDeduplicator:

    def test_signature_is_per_second(self):
        assert dedup_signature(NOW + 999, 42) == dedup_signature(NOW, 42)
        assert dedup_signature(NOW + 1000, 42) != dedup_signature(NOW, 42)

    def test_nothing_skipped_before_first_write(self):
        dedup = Deduplicator(DedupConfig())
        assert dedup.should_skip("a", NOW, 100) is False
        assert dedup.last_accepted is None

    def test_exact_repeat_is_skipped(self):
        dedup = Deduplicator(DedupConfig())
        dedup.record(Tick(NOW, 100))
        assert dedup.should_skip("a", NOW, 100) is True
        assert dedup.skipped == 1

    def test_same_count_within_proximity_is_skipped(self):
        dedup = Deduplicator(DedupConfig())
        dedup.record(Tick(NOW, 100))
        assert dedup.should_skip("a", NOW + 1500, 100) is True
        assert dedup.should_skip("a", NOW + 2500, 100) is False

    def test_recent_signature_is_skipped(self):
        dedup = Deduplicator(DedupConfig())
        dedup.record(Tick(NOW, 100))
        dedup.record(Tick(NOW + 500, 101))
        # Another poller reports the earlier reading inside the same second
        assert dedup.should_skip("b", NOW + 700, 100) is True

    def test_new_count_is_not_skipped(self):
        dedup = Deduplicator(DedupConfig())
        dedup.record(Tick(NOW, 100))
        assert dedup.should_skip("a", NOW + 500, 101) is False

    def test_seed_only_fills_empty_history(self):
        dedup = Deduplicator(DedupConfig())
        dedup.seed(Tick(NOW - 1000, 90))
        dedup.seed(Tick(NOW, 95))
        assert dedup.last_accepted == Tick(NOW - 1000, 90)

    def test_prune_drops_expired_signatures(self):
        dedup = Deduplicator(DedupConfig())
        dedup.record(Tick(NOW, 100))
        dedup.record(Tick(NOW + 15_000, 110))
        assert dedup.prune(NOW + 20_000) == 1
        assert dedup.size == 1

    def test_map_self_prunes_past_threshold(self):
        dedup = Deduplicator(DedupConfig(PRUNE_THRESHOLD=5, WINDOW_MS=10_000))
        for i in range(6):
            dedup.record(Tick(NOW + i * 1000, 100 + i))
        dedup.record(Tick(NOW + 60_000, 200))
        assert dedup.size == 1


class TestRateLimiter:

    def test_request_over_quota_is_rejected(self):
        limiter = RateLimiter(RateLimitConfig(MAX_REQUESTS=3, WINDOW_MS=60_000, GLOBAL_MAX_REQUESTS=0))
        for i in range(3):
            limiter.hit("203.0.113.7", NOW + i)

        with pytest.raises(RateLimited) as exc:
            limiter.hit("203.0.113.7", NOW + 10_000)

        assert exc.value.retry_after == 50
        assert 0 < exc.value.retry_after <= 60
        assert exc.value.error_code.http_status == 429
        assert limiter.rejected == 1

    def test_callers_are_independent(self):
        limiter = RateLimiter(RateLimitConfig(MAX_REQUESTS=1, WINDOW_MS=60_000, GLOBAL_MAX_REQUESTS=0))
        limiter.hit("a", NOW)
        limiter.hit("b", NOW)
        with pytest.raises(RateLimited):
            limiter.hit("a", NOW + 1)

    def test_window_resets(self):
        limiter = RateLimiter(RateLimitConfig(MAX_REQUESTS=1, WINDOW_MS=60_000, GLOBAL_MAX_REQUESTS=0))
        limiter.hit("a", NOW)
        limiter.hit("a", NOW + 60_000)

    def test_global_ceiling(self):
        limiter = RateLimiter(RateLimitConfig(MAX_REQUESTS=100, WINDOW_MS=60_000, GLOBAL_MAX_REQUESTS=2))
        limiter.hit("a", NOW)
        limiter.hit("b", NOW)
        with pytest.raises(RateLimited) as exc:
            limiter.hit("c", NOW + 30_000)
        assert exc.value.scope == "global"
        assert exc.value.retry_after == 30

    def test_prune_drops_elapsed_windows(self):
        limiter = RateLimiter(RateLimitConfig(MAX_REQUESTS=5, WINDOW_MS=60_000, GLOBAL_MAX_REQUESTS=0))
        limiter.hit("a", NOW)
        limiter.hit("b", NOW + 30_000)
        assert limiter.prune(NOW + 60_000) == 1
        assert limiter.size == 1
