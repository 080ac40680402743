"""
Response Caching
================

Short-TTL cache for query payloads, with ETag support.

Usage
-----
    cache = ResponseCache(CacheConfig())

    key = normalize_query_key({"rates": "true", "limit": "500"})
    entry = cache.get(key, now_ms)
    if entry is None:
        etag = compute_etag(total, newest, now_ms, bucket_seconds=10, key=key)
        entry = cache.put(key, payload, etag, now_ms)

Cache Keys
----------
    Entries are keyed by the normalized query string: parameters sorted
    by name and lower-cased, so "?b=1&a=2" and "?a=2&b=1" share an entry.

ETags
-----
    An ETag is a fingerprint of the result, not of the serialized body:
    total tick count, newest timestamp, daily summary count, a coarse
    time bucket and the query key. Two reads with no intervening write
    inside the same bucket produce the same ETag, so If-None-Match can
    short-circuit to 304 before a body is built.

Cache Invalidation
-----------------
    - entries older than TTL_SECONDS are treated as misses
    - expired entries are swept opportunistically on a fraction of
      requests (CLEANUP_PROBABILITY), or explicitly via prune()
    - when MAX_ENTRIES is exceeded the oldest entries are evicted first
    - invalidate() clears everything (called after accepted writes)

Thread Safety
-------------
    All operations take an RLock; one instance serves every request
    thread of the process.
"""

import hashlib
import json
import logging
import random
import threading
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from .config import CacheConfig

logger = logging.getLogger("Tracker.Cache")


def normalize_query_key(params: Optional[Mapping[str, Any]]) -> str:
    """Stable key for a query-parameter mapping."""
    if not params:
        return ""
    items = sorted((str(k).lower(), str(v).lower()) for k, v in params.items() if v is not None)
    return "&".join(f"{k}={v}" for k, v in items)


def compute_etag(
    total_ticks: int,
    newest_ts: Optional[int],
    now_ms: int,
    bucket_seconds: int = 10,
    key: str = "",
    daily_count: int = 0,
) -> str:
    """
    Fingerprint a result.

    >>> compute_etag(42, 1700000000000, 1700000005000, 10)
    '"42-1700000000000-0-170000000-"'
    """
    bucket = now_ms // (max(1, bucket_seconds) * 1000)
    digest = hashlib.sha1(key.encode("utf-8")).hexdigest()[:8] if key else ""
    return f'"{total_ticks}-{newest_ts or 0}-{daily_count}-{bucket}-{digest}"'


def etag_matches(if_none_match: Optional[str], etag: str) -> bool:
    """Compare an If-None-Match header (possibly a list, possibly weak) to an ETag."""
    if not if_none_match:
        return False
    candidates = [c.strip() for c in if_none_match.split(",")]
    for candidate in candidates:
        if candidate == "*":
            return True
        if candidate.startswith("W/"):
            candidate = candidate[2:]
        if candidate == etag:
            return True
    return False


@dataclass
class CacheEntry:
    """A cached payload with metadata."""
    data: Any
    etag: str
    timestamp: int          # epoch ms when stored
    size_hint: int = 0      # approximate serialized size in bytes
    hits: int = 0

    def is_expired(self, ttl_seconds: float, now_ms: int) -> bool:
        return now_ms - self.timestamp > ttl_seconds * 1000

    def age_seconds(self, now_ms: int) -> float:
        return (now_ms - self.timestamp) / 1000


@dataclass
class CacheStats:
    """Statistics for cache performance monitoring."""
    hits: int = 0
    misses: int = 0
    not_modified: int = 0
    evictions: int = 0
    expirations: int = 0
    invalidations: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "hitRate": round(self.hit_rate, 3),
            "notModified": self.not_modified,
            "evictions": self.evictions,
            "expirations": self.expirations,
            "invalidations": self.invalidations,
        }


class ResponseCache:
    """
    TTL + capacity bounded cache of query results.

    Example:
        >>> cache = ResponseCache(CacheConfig(), rng=random.Random(0))
        >>> cache.put("rates=true", {"rates": {...}}, '"1-2-0-3-ab"', now_ms)
        >>> cache.get("rates=true", now_ms + 1000).etag
        '"1-2-0-3-ab"'
    """

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        rng: Optional[random.Random] = None,
    ):
        self.config = config or CacheConfig()
        self._ttl = self.config.TTL_SECONDS
        self._max_entries = max(1, self.config.MAX_ENTRIES)
        self._rng = rng or random.Random()
        self._cache: Dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        self._stats = CacheStats()

    def get(self, key: str, now_ms: int) -> Optional[CacheEntry]:
        """Return a live entry or None. Expired entries count as misses."""
        self.maybe_prune(now_ms)
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                self._stats.misses += 1
                return None
            if entry.is_expired(self._ttl, now_ms):
                del self._cache[key]
                self._stats.expirations += 1
                self._stats.misses += 1
                return None
            entry.hits += 1
            self._stats.hits += 1
            logger.debug(
                f"Cache hit: key={key!r}, age={entry.age_seconds(now_ms):.1f}s, hits={entry.hits}"
            )
            return entry

    def put(self, key: str, data: Any, etag: str, now_ms: int) -> CacheEntry:
        try:
            size_hint = len(json.dumps(data, separators=(",", ":"), default=str))
        except (TypeError, ValueError):
            size_hint = 0

        entry = CacheEntry(data=data, etag=etag, timestamp=now_ms, size_hint=size_hint)
        with self._lock:
            self._cache[key] = entry
            while len(self._cache) > self._max_entries:
                self._evict_oldest()
        return entry

    def record_not_modified(self) -> None:
        with self._lock:
            self._stats.not_modified += 1

    def maybe_prune(self, now_ms: int) -> int:
        """Sweep expired entries on a random fraction of calls."""
        if self._rng.random() < self.config.CLEANUP_PROBABILITY:
            return self.prune(now_ms)
        return 0

    def prune(self, now_ms: int) -> int:
        """Drop every expired entry. Returns number removed."""
        with self._lock:
            expired = [k for k, e in self._cache.items() if e.is_expired(self._ttl, now_ms)]
            for k in expired:
                del self._cache[k]
            self._stats.expirations += len(expired)
        if expired:
            logger.debug(f"Pruned {len(expired)} expired cache entries")
        return len(expired)

    def invalidate(self, key: Optional[str] = None) -> int:
        """Drop one key, or everything when key is None."""
        with self._lock:
            if key is not None:
                if self._cache.pop(key, None) is not None:
                    self._stats.invalidations += 1
                    return 1
                return 0
            count = len(self._cache)
            self._cache.clear()
            self._stats.invalidations += count
            return count

    def _evict_oldest(self) -> None:
        """Evict the oldest cache entry."""
        if not self._cache:
            return
        oldest_key = min(self._cache, key=lambda k: self._cache[k].timestamp)
        del self._cache[oldest_key]
        self._stats.evictions += 1

    @property
    def size(self) -> int:
        return len(self._cache)

    @property
    def stats(self) -> CacheStats:
        return self._stats

    def get_info(self, now_ms: int) -> Dict[str, Any]:
        """Get cache info for debugging/API."""
        with self._lock:
            entries = [
                {
                    "key": key,
                    "ageSeconds": round(entry.age_seconds(now_ms), 1),
                    "hits": entry.hits,
                    "sizeHint": entry.size_hint,
                    "expired": entry.is_expired(self._ttl, now_ms),
                }
                for key, entry in self._cache.items()
            ]
            return {
                "ttlSeconds": self._ttl,
                "maxEntries": self._max_entries,
                "currentSize": len(entries),
                "totalBytes": sum(e["sizeHint"] for e in entries),
                "entries": entries,
                "stats": self._stats.to_dict(),
            }
