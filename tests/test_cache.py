"""Tests for the response cache and ETag helpers."""

import random

from conftest import NOW
from tracker.core.cache import (
    ResponseCache,
    compute_etag,
    etag_matches,
    normalize_query_key,
)
from tracker.core.config import CacheConfig


def _cache(**overrides) -> ResponseCache:
    values = {"CLEANUP_PROBABILITY": 0.0}
    values.update(overrides)
    return ResponseCache(CacheConfig(**values), rng=random.Random(0))


class TestQueryKey:

    def test_order_and_case_insensitive(self):
        assert normalize_query_key({"b": "1", "A": "True"}) == normalize_query_key({"a": "true", "B": "1"})

    def test_none_values_dropped(self):
        assert normalize_query_key({"rates": None, "limit": "5"}) == "limit=5"
        assert normalize_query_key(None) == ""


class TestETag:

    def test_stable_within_bucket(self):
        first = compute_etag(42, NOW, NOW, 10, "rates=true")
        second = compute_etag(42, NOW, NOW + 5_000, 10, "rates=true")
        assert first == second

    def test_changes_with_data_and_key(self):
        base = compute_etag(42, NOW, NOW, 10, "rates=true")
        assert compute_etag(43, NOW + 1, NOW, 10, "rates=true") != base
        assert compute_etag(42, NOW, NOW, 10, "rates=false") != base
        assert compute_etag(42, NOW, NOW, 10, "rates=true", daily_count=1) != base
        assert compute_etag(42, NOW, NOW + 10_000, 10, "rates=true") != base

    def test_quoted(self):
        etag = compute_etag(0, None, NOW)
        assert etag.startswith('"') and etag.endswith('"')

    def test_if_none_match_forms(self):
        etag = compute_etag(1, NOW, NOW)
        assert etag_matches(etag, etag)
        assert etag_matches(f"W/{etag}", etag)
        assert etag_matches(f'"other", {etag}', etag)
        assert etag_matches("*", etag)
        assert not etag_matches('"other"', etag)
        assert not etag_matches(None, etag)


class TestResponseCache:

    def test_hit_then_expiry(self):
        cache = _cache(TTL_SECONDS=5.0)
        cache.put("k", {"v": 1}, '"e"', NOW)

        entry = cache.get("k", NOW + 4_000)
        assert entry.data == {"v": 1}
        assert entry.etag == '"e"'

        assert cache.get("k", NOW + 6_000) is None
        stats = cache.stats
        assert stats.hits == 1
        assert stats.misses == 1
        assert stats.expirations == 1

    def test_capacity_evicts_oldest(self):
        cache = _cache(MAX_ENTRIES=2)
        cache.put("a", 1, '"a"', NOW)
        cache.put("b", 2, '"b"', NOW + 1)
        cache.put("c", 3, '"c"', NOW + 2)

        assert cache.size == 2
        assert cache.get("a", NOW + 3) is None
        assert cache.get("c", NOW + 3).data == 3
        assert cache.stats.evictions == 1

    def test_prune_and_invalidate(self):
        cache = _cache(TTL_SECONDS=5.0)
        cache.put("old", 1, '"o"', NOW - 10_000)
        cache.put("new", 2, '"n"', NOW)

        assert cache.prune(NOW) == 1
        assert cache.size == 1

        cache.put("other", 3, '"x"', NOW)
        assert cache.invalidate("new") == 1
        assert cache.invalidate() == 1
        assert cache.size == 0

    def test_opportunistic_cleanup(self):
        cache = _cache(TTL_SECONDS=5.0, CLEANUP_PROBABILITY=1.0)
        cache.put("old", 1, '"o"', NOW - 10_000)
        cache.get("missing", NOW)
        assert cache.size == 0

    def test_info(self):
        cache = _cache()
        cache.put("k", {"ticks": [1, 2, 3]}, '"e"', NOW)
        info = cache.get_info(NOW + 1_000)
        assert info["currentSize"] == 1
        assert info["entries"][0]["ageSeconds"] == 1.0
        assert info["totalBytes"] > 0
