"""
Tick Service - request operations over the engine
=================================================

Wires validator, deduplicator, rate limiter, store, retention manager,
response cache and forecast into the two request operations the HTTP
layer exposes. Every collaborator is constructor-injected; nothing lives
at module level, so several independent instances can coexist.

Lifecycle
---------
    service = TickService(create_store(config), config)   # process start
    service.ingest({"ts": ..., "count": ...}, caller_key="203.0.113.7")
    service.query({"rates": "true"}, if_none_match='"12-..."')
    service.housekeeping()                                 # optional, explicit
    service.close()                                        # shutdown

Ingest Path
-----------
    rate limit -> parse -> validate -> dedup -> append -> remember ->
    invalidate cache -> archival / retention

    204  accepted, or duplicate (X-Duplicate: true)
    400  malformed / out of range
    429  rate limited, Retry-After
    503  storage busy or unavailable, Retry-After

Query Path
----------
    cache hit -> (304 | cached body)
    miss -> summary -> ETag -> (304 | build payload -> cache -> 200)

    An unreadable store answers as empty; anything unexpected is a 500
    error envelope rather than an exception escaping to the HTTP layer.

    A failing analytics section degrades to a zeroed structure and adds
    an entry to metadata.errors instead of failing the response.
"""

import json
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from .cache import ResponseCache, compute_etag, etag_matches, normalize_query_key
from .config import TrackerConfig
from .days import local_date, local_day_start, next_day_start
from .dedup import Deduplicator, RateLimiter
from .errors import (
    ErrorCode,
    ForecastInsufficientData,
    RateLimited,
    StorageCorrupt,
    StorageUnavailable,
    TrackerError,
    api_error_from_exception,
)
from .forecast import HoltWinters, daily_series
from .models import DailyStat, RateSnapshot, Tick, TodayStats
from .rates import compute_rates, compute_today_stats, downsample
from .retention import RetentionManager
from .store import TickStore, now_ms as _wall_clock_ms
from .validation import (
    TickValidator,
    ValidationError,
    validate_bool,
    validate_float_range,
    validate_positive_int,
)

logger = logging.getLogger("Tracker.Service")

QUERY_PARAMS = (
    "ticks", "rates", "today", "daily", "forecast",
    "limit", "since", "target", "horizon", "confidence",
)


@dataclass
class ApiResponse:
    """Transport-neutral response: status, JSON body (or None), headers."""
    status: int
    body: Optional[Dict[str, Any]] = None
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class QueryOptions:
    ticks: bool = True
    rates: bool = True
    today: bool = True
    daily: bool = False
    forecast: bool = False
    limit: int = 5000
    since: Optional[int] = None
    target: Optional[int] = None
    horizon: int = 30
    confidence: float = 0.95


def _error_response(exc: TrackerError, start: float) -> ApiResponse:
    headers = {"X-Processing-Time": f"{(time.monotonic() - start) * 1000:.0f}ms"}
    if exc.retry_after is not None:
        headers["Retry-After"] = str(int(exc.retry_after))
    if isinstance(exc, RateLimited):
        headers["X-RateLimit-Remaining"] = "0"
    return ApiResponse(exc.error_code.http_status, exc.to_dict(), headers)


class TickService:
    """
    Request-level facade over the tick engine.

    Args:
        store: Persistence backend (file or sqlite)
        config: Immutable configuration
        rng: Random source for opportunistic housekeeping
        clock: Returns wall-clock epoch ms (injectable for tests)
    """

    def __init__(
        self,
        store: TickStore,
        config: Optional[TrackerConfig] = None,
        cache: Optional[ResponseCache] = None,
        dedup: Optional[Deduplicator] = None,
        limiter: Optional[RateLimiter] = None,
        validator: Optional[TickValidator] = None,
        retention: Optional[RetentionManager] = None,
        rng: Optional[random.Random] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.config = config or TrackerConfig()
        self.store = store
        self._rng = rng or random.Random()
        self.cache = cache or ResponseCache(self.config.CACHE, rng=self._rng)
        self.dedup = dedup or Deduplicator(self.config.DEDUP)
        self.limiter = limiter or RateLimiter(self.config.RATE_LIMIT)
        self.validator = validator or TickValidator(self.config.VALIDATION)
        self.retention = retention or RetentionManager(store, self.config.RETENTION)
        self.tz = self.retention.tz
        self._clock = clock or _wall_clock_ms
        self._seeded = False

    # ------------------------------------------------------------------
    # Ingest
    # ------------------------------------------------------------------

    def seed_last_accepted(self) -> None:
        """Prime validator/dedup history from the newest stored tick, once."""
        if self._seeded:
            return
        try:
            self.dedup.seed(self.store.newest())
            self._seeded = True
        except TrackerError as e:
            logger.warning(f"Could not seed last accepted tick: {e}")

    @staticmethod
    def _parse_payload(payload: Union[Mapping[str, Any], str, bytes, None]) -> Mapping[str, Any]:
        if isinstance(payload, (bytes, bytearray)):
            payload = payload.decode("utf-8", errors="replace")
        if isinstance(payload, str):
            try:
                payload = json.loads(payload)
            except json.JSONDecodeError:
                raise ValidationError("body", "Invalid JSON")
        if not isinstance(payload, Mapping):
            raise ValidationError("body", "Expected a JSON object with 'ts' and 'count'")
        return payload

    def ingest(
        self,
        payload: Union[Mapping[str, Any], str, bytes, None],
        caller_key: str = "unknown",
        now_ms: Optional[int] = None,
        deadline: Optional[float] = None,
    ) -> ApiResponse:
        """
        Accept one (ts, count) sample.

        Args:
            payload: Decoded mapping or raw JSON body
            caller_key: Identity used for rate limiting (usually client IP)
            now_ms: Server clock override
            deadline: time.monotonic() bound for storage I/O
        """
        start = time.monotonic()
        now = self._clock() if now_ms is None else now_ms
        self._maybe_housekeeping(now)

        try:
            self.limiter.hit(caller_key, now)
            data = self._parse_payload(payload)
            self.seed_last_accepted()
            tick = self.validator.validate(
                data.get("ts"), data.get("count"), now, previous=self.dedup.last_accepted
            )

            if self.dedup.should_skip(caller_key, tick.ts, tick.count):
                return ApiResponse(204, None, {
                    "X-Duplicate": "true",
                    "X-Processing-Time": f"{(time.monotonic() - start) * 1000:.0f}ms",
                })

            changed = self.store.append(tick, now_ms=now, deadline=deadline)
            self.dedup.record(tick)
            if changed:
                self.cache.invalidate()
            self.retention.on_write(now, written_ts=tick.ts, deadline=deadline)

        except ValidationError as e:
            logger.warning(f"Rejected sample from {caller_key}: {e}")
            return _error_response(e, start)
        except RateLimited as e:
            return _error_response(e, start)
        except StorageUnavailable as e:
            logger.error(f"Storage unavailable during ingest: {e}")
            e.retry_after = max(e.retry_after or 0, self.config.API.UNAVAILABLE_RETRY_AFTER_SECONDS)
            return _error_response(e, start)
        except Exception as e:
            logger.error(f"Ingest failed: {e}", exc_info=True)
            return ApiResponse(500, api_error_from_exception(e), {
                "X-Processing-Time": f"{(time.monotonic() - start) * 1000:.0f}ms",
            })

        return ApiResponse(204, None, {
            "X-Processing-Time": f"{(time.monotonic() - start) * 1000:.0f}ms",
            "X-Timestamp": str(tick.ts),
            "X-Count": str(tick.count),
        })

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    def parse_query(self, params: Optional[Mapping[str, Any]]) -> QueryOptions:
        """
        Validate raw query parameters.

        Raises:
            ValidationError: For the first malformed parameter
        """
        params = params or {}
        fc = self.config.FORECAST
        max_ticks = self.config.API.MAX_TICKS
        return QueryOptions(
            ticks=validate_bool(params.get("ticks"), "ticks", True),
            rates=validate_bool(params.get("rates"), "rates", True),
            today=validate_bool(params.get("today"), "today", True),
            daily=validate_bool(params.get("daily"), "daily", False),
            forecast=validate_bool(params.get("forecast"), "forecast", False),
            limit=validate_positive_int(params.get("limit"), "limit", max_ticks, 1, max_ticks),
            since=validate_positive_int(params.get("since"), "since", None, 0),
            target=validate_positive_int(params.get("target"), "target", None, 1),
            horizon=validate_positive_int(params.get("horizon"), "horizon", fc.HORIZON_DAYS, 1, 365),
            confidence=validate_float_range(
                params.get("confidence"), "confidence", fc.CONFIDENCE_LEVEL, 0.5, 0.999
            ),
        )

    def _cache_headers(self, etag: str) -> Dict[str, str]:
        return {
            "ETag": etag,
            "Cache-Control": f"public, max-age={self.config.CACHE.MAX_AGE_SECONDS}",
        }

    def query(
        self,
        params: Optional[Mapping[str, Any]] = None,
        if_none_match: Optional[str] = None,
        now_ms: Optional[int] = None,
        deadline: Optional[float] = None,
    ) -> ApiResponse:
        """
        Read history, rates, today's stats and optional forecast.

        Returns 304 with no body when if_none_match equals the current ETag.
        """
        start = time.monotonic()
        now = self._clock() if now_ms is None else now_ms
        self._maybe_housekeeping(now)

        try:
            options = self.parse_query(params)
        except ValidationError as e:
            return _error_response(e, start)

        key = normalize_query_key({k: params.get(k) for k in QUERY_PARAMS} if params else None)

        try:
            return self._answer_query(options, key, if_none_match, now, deadline, start)
        except StorageUnavailable as e:
            e.retry_after = max(e.retry_after or 0, self.config.API.UNAVAILABLE_RETRY_AFTER_SECONDS)
            return _error_response(e, start)
        except Exception as e:
            logger.error(f"Query failed: {e}", exc_info=True)
            return ApiResponse(500, api_error_from_exception(e), {
                "X-Processing-Time": f"{(time.monotonic() - start) * 1000:.0f}ms",
            })

    def _answer_query(
        self,
        options: QueryOptions,
        key: str,
        if_none_match: Optional[str],
        now: int,
        deadline: Optional[float],
        start: float,
    ) -> ApiResponse:
        entry = self.cache.get(key, now)
        if entry is not None:
            if etag_matches(if_none_match, entry.etag):
                self.cache.record_not_modified()
                return ApiResponse(304, None, self._cache_headers(entry.etag))
            headers = self._cache_headers(entry.etag)
            headers["X-Cache"] = "HIT"
            return ApiResponse(200, entry.data, headers)

        daily: List[DailyStat] = []
        try:
            total, oldest, newest = self.store.summary(deadline=deadline)
            if options.daily or options.forecast:
                daily = self.store.read_daily_stats(deadline=deadline)
        except StorageCorrupt as e:
            logger.error(f"Store unreadable, answering as empty: {e}")
            total, oldest, newest = 0, None, None

        etag = compute_etag(
            total, newest, now,
            bucket_seconds=self.config.CACHE.ETAG_BUCKET_SECONDS,
            key=key,
            daily_count=len(daily),
        )
        if etag_matches(if_none_match, etag):
            self.cache.record_not_modified()
            return ApiResponse(304, None, self._cache_headers(etag))

        payload, errors = self._build_payload(options, now, daily, deadline)
        if not errors:
            self.cache.put(key, payload, etag, now)

        headers = self._cache_headers(etag)
        headers["X-Cache"] = "MISS"
        headers["X-Tick-Count"] = str(payload["metadata"]["totalTicks"])
        headers["X-Processing-Time"] = f"{(time.monotonic() - start) * 1000:.0f}ms"
        return ApiResponse(200, payload, headers)

    def _build_payload(
        self,
        options: QueryOptions,
        now: int,
        daily: List[DailyStat],
        deadline: Optional[float],
    ):
        errors: List[str] = []
        today_start = local_day_start(now, self.tz)
        retention_hours = self.config.RETENTION.RETENTION_HOURS

        try:
            ticks = self.store.read_all(deadline=deadline)
        except TrackerError as e:
            logger.error(f"Tick read failed, serving empty history: {e}")
            errors.append(f"ticks: {e.message}")
            ticks = []

        metadata: Dict[str, Any] = {
            "totalTicks": len(ticks),
            "oldestTick": ticks[0].ts if ticks else None,
            "newestTick": ticks[-1].ts if ticks else None,
            "serverTime": now,
            "retentionHours": retention_hours,
            "todayStart": today_start,
        }
        payload: Dict[str, Any] = {"metadata": metadata}

        if options.ticks:
            history = ticks
            if options.since is not None:
                history = [t for t in ticks if t.ts > options.since]
            sampled = downsample(history, options.limit)
            metadata["returnedTicks"] = len(sampled)
            metadata["downsampled"] = len(sampled) < len(history)
            payload["ticks"] = [t.to_dict() for t in sampled]

        if options.rates:
            try:
                payload["rates"] = compute_rates(now, ticks, self.config.ANALYTICS).to_dict()
            except Exception as e:
                logger.error(f"Rate computation failed: {e}", exc_info=True)
                errors.append(f"rates: {e}")
                payload["rates"] = RateSnapshot().to_dict()

        if options.today:
            try:
                payload["todayStats"] = compute_today_stats(
                    now, ticks, today_start, next_day_start(now, self.tz)
                ).to_dict()
            except Exception as e:
                logger.error(f"Today stats failed: {e}", exc_info=True)
                errors.append(f"todayStats: {e}")
                payload["todayStats"] = TodayStats(day_start=today_start).to_dict()

        if options.daily:
            payload["dailyStats"] = [s.to_dict() for s in daily]

        if options.forecast:
            payload["forecast"] = self._forecast(options, daily, ticks, now, errors)

        if errors:
            metadata["error"] = True
            metadata["errors"] = errors

        return payload, errors

    def _forecast(
        self,
        options: QueryOptions,
        daily: List[DailyStat],
        ticks: List[Tick],
        now: int,
        errors: List[str],
    ) -> Dict[str, Any]:
        try:
            series, filled = daily_series(daily, self.config.FORECAST.SEASON_PERIOD)
            model = HoltWinters.from_config(series, self.config.FORECAST)
            current = ticks[-1].count if ticks else None
            result = model.to_dict(
                horizon=options.horizon,
                confidence_level=options.confidence,
                current=current if options.target is not None else None,
                target=options.target,
                today=local_date(now, self.tz),
            )
            result["filledDays"] = filled
            return result
        except ForecastInsufficientData as e:
            return {"available": False, "reason": e.message, "details": e.details}
        except Exception as e:
            logger.error(f"Forecast failed: {e}", exc_info=True)
            errors.append(f"forecast: {e}")
            return {"available": False, "reason": ErrorCode.INTERNAL_ERROR.default_message}

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def _maybe_housekeeping(self, now: int) -> None:
        if self._rng.random() < self.config.API.HOUSEKEEPING_PROBABILITY:
            self.housekeeping(now)

    def housekeeping(self, now_ms: Optional[int] = None) -> Dict[str, int]:
        """Prune expired cache entries, dedup signatures and rate-limit records."""
        now = self._clock() if now_ms is None else now_ms
        result = {
            "cache": self.cache.prune(now),
            "dedup": self.dedup.prune(now),
            "rateLimit": self.limiter.prune(now),
        }
        if any(result.values()):
            logger.debug(f"Housekeeping removed {result}")
        return result

    def get_stats(self, now_ms: Optional[int] = None) -> Dict[str, Any]:
        now = self._clock() if now_ms is None else now_ms
        return {
            "cache": self.cache.get_info(now),
            "dedup": {"size": self.dedup.size, "skipped": self.dedup.skipped},
            "rateLimit": {"size": self.limiter.size, "rejected": self.limiter.rejected},
            "config": self.config.to_dict(),
        }

    def close(self) -> None:
        self.store.close()
