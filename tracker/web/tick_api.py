"""
Tick API - CherryPy endpoints for ingest and history
====================================================

Mount at /api for:

    POST /api/tick      {"ts": <epoch ms>, "count": <int>}
    GET  /api/history   ?ticks=&rates=&today=&daily=&forecast=&limit=&since=
                         &target=&horizon=&confidence=
    GET  /api/stats     cache / dedup / rate-limit counters

Status Codes
------------
    204  sample accepted or duplicate (X-Duplicate: true)
    304  If-None-Match matched the current ETag
    400  malformed body or parameter
    429  rate limited (Retry-After)
    503  storage unavailable (Retry-After)

Error bodies follow the standard envelope:

    {
        "success": False,
        "error": {
            "code": "RATE_LIMITED",
            "message": "...",
            "httpStatus": 429,
            "details": {...}
        }
    }
"""

import json
import logging
import time
from typing import Any, Dict, Optional

import cherrypy

from tracker.core.errors import api_error_from_exception, api_success
from tracker.core.service import ApiResponse, TickService

logger = logging.getLogger("TickAPI")


class TickAPI:
    """
    CherryPy-mounted API over a TickService.

    Args:
        service: Shared TickService instance
        config: The "http" section of the YAML config
        request_timeout: Seconds each request may spend on storage I/O
    """

    def __init__(
        self,
        service: TickService,
        config: Optional[Dict[str, Any]] = None,
        request_timeout: float = 10.0,
    ):
        self.service = service
        self.config = config or {}
        self.request_timeout = float(self.config.get("request_timeout", request_timeout))

    def _is_cors_enabled(self) -> bool:
        return bool(self.config.get("cors_enabled", False))

    def _set_cors_headers(self) -> None:
        if self._is_cors_enabled():
            cherrypy.response.headers["Access-Control-Allow-Origin"] = "*"
            cherrypy.response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
            cherrypy.response.headers["Access-Control-Allow-Headers"] = "Content-Type, If-None-Match"
            cherrypy.response.headers["Access-Control-Expose-Headers"] = (
                "ETag, Retry-After, X-Duplicate, X-Tick-Count, X-Processing-Time"
            )

    def _deadline(self) -> float:
        return time.monotonic() + self.request_timeout

    @staticmethod
    def _caller_key() -> str:
        """Client identity for rate limiting: first forwarded hop, else peer address."""
        headers = cherrypy.request.headers
        forwarded = headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()
        real_ip = headers.get("X-Real-IP")
        if real_ip:
            return real_ip.strip()
        remote = cherrypy.request.remote
        return getattr(remote, "ip", None) or "unknown"

    def _send(self, response: ApiResponse) -> bytes:
        cherrypy.response.status = response.status
        for name, value in response.headers.items():
            cherrypy.response.headers[name] = value
        self._set_cors_headers()
        if response.body is None:
            return b""
        cherrypy.response.headers["Content-Type"] = "application/json"
        return json.dumps(response.body).encode("utf-8")

    def _require_method(self, *allowed: str) -> None:
        if cherrypy.request.method not in allowed:
            cherrypy.response.headers["Allow"] = ", ".join(allowed)
            raise cherrypy.HTTPError(405, f"Method not allowed. Use {' or '.join(allowed)}.")

    @cherrypy.expose
    def default(self, *args, **kwargs):
        if cherrypy.request.method == "OPTIONS":
            self._set_cors_headers()
            return ""
        raise cherrypy.HTTPError(404)

    @cherrypy.expose
    def tick(self, **kwargs):
        """
        POST /api/tick

        Body: {"ts": <epoch ms>, "count": <non-negative int>}
        """
        if cherrypy.request.method == "OPTIONS":
            self._set_cors_headers()
            return ""
        self._require_method("POST")

        try:
            body = cherrypy.request.body.read() if cherrypy.request.body else b""
        except Exception as e:
            logger.error(f"Error reading tick body: {e}")
            return self._send(ApiResponse(400, api_error_from_exception(e)))

        response = self.service.ingest(
            body,
            caller_key=self._caller_key(),
            deadline=self._deadline(),
        )
        return self._send(response)

    @cherrypy.expose
    def history(self, **params):
        """
        GET /api/history

        Query params:
            ticks / rates / today: include section (default true)
            daily / forecast: include section (default false)
            limit: max ticks returned, evenly down-sampled above it
            since: only ticks with ts > since
            target: signature goal for the forecast ETA
            horizon: forecast days (default 30)
            confidence: band level, e.g. 0.95
        """
        self._require_method("GET", "HEAD")
        response = self.service.query(
            params,
            if_none_match=cherrypy.request.headers.get("If-None-Match"),
            deadline=self._deadline(),
        )
        return self._send(response)

    @cherrypy.expose
    @cherrypy.tools.json_out()
    def stats(self):
        """GET /api/stats"""
        try:
            return api_success(self.service.get_stats())
        except Exception as e:
            logger.error(f"Error getting tracker stats: {e}")
            return api_error_from_exception(e)
