"""Tests for the CherryPy endpoint layer, with request/response stubbed."""

import io
import json
import random
from types import SimpleNamespace

import cherrypy
import pytest

from conftest import NOW
from tracker.core.service import TickService
from tracker.web.tick_api import TickAPI


@pytest.fixture
def api(file_store, config):
    service = TickService(file_store, config, rng=random.Random(0), clock=lambda: NOW)
    return TickAPI(service, {"cors_enabled": True})


def _stub(monkeypatch, method="GET", body=b"", headers=None, ip="198.51.100.4"):
    request = SimpleNamespace(
        method=method,
        headers=headers or {},
        remote=SimpleNamespace(ip=ip),
        body=io.BytesIO(body),
        params={},
    )
    response = SimpleNamespace(status=200, headers={})
    monkeypatch.setattr(cherrypy, "request", request)
    monkeypatch.setattr(cherrypy, "response", response)
    return response


class TestTickEndpoint:

    def test_post_accepted(self, api, monkeypatch, file_store):
        response = _stub(monkeypatch, "POST", json.dumps({"ts": NOW, "count": 12}).encode())

        assert api.tick() == b""
        assert response.status == 204
        assert response.headers["Access-Control-Allow-Origin"] == "*"
        assert file_store.read_all()[0].count == 12

    def test_bad_body(self, api, monkeypatch):
        response = _stub(monkeypatch, "POST", b"{oops")

        body = json.loads(api.tick())

        assert response.status == 400
        assert response.headers["Content-Type"] == "application/json"
        assert body["error"]["code"] == "INVALID_PARAMETER"

    def test_get_not_allowed(self, api, monkeypatch):
        response = _stub(monkeypatch, "GET")
        with pytest.raises(cherrypy.HTTPError):
            api.tick()
        assert response.headers["Allow"] == "POST"

    def test_caller_key_prefers_forwarded_for(self, monkeypatch):
        _stub(monkeypatch, headers={"X-Forwarded-For": "203.0.113.9, 10.0.0.1"})
        assert TickAPI._caller_key() == "203.0.113.9"

        _stub(monkeypatch, headers={"X-Real-IP": "203.0.113.10"})
        assert TickAPI._caller_key() == "203.0.113.10"

        _stub(monkeypatch, ip="192.0.2.1")
        assert TickAPI._caller_key() == "192.0.2.1"


class TestHistoryEndpoint:

    def test_history_then_not_modified(self, api, monkeypatch):
        _stub(monkeypatch, "POST", json.dumps({"ts": NOW, "count": 12}).encode())
        api.tick()

        response = _stub(monkeypatch, "GET")
        body = json.loads(api.history(rates="true"))
        etag = response.headers["ETag"]

        assert response.status == 200
        assert body["metadata"]["totalTicks"] == 1

        response = _stub(monkeypatch, "GET", headers={"If-None-Match": etag})
        assert api.history(rates="true") == b""
        assert response.status == 304

    def test_stats(self, api, monkeypatch):
        _stub(monkeypatch, "GET")
        result = api.stats()
        assert result["success"] is True
        assert "cache" in result["data"]
