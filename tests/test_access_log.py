"""Tests for the AccessLogMiddleware."""

import logging
import re

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from hitl_broker.errors import BadRequestError
from hitl_broker.middleware import RequestIDMiddleware, pick_request_id
from hitl_broker.middleware.access_log import AccessLogMiddleware
from hitl_broker.middleware.exception_handler import setup_exception_handlers


@pytest.fixture()
def test_app() -> FastAPI:
    """Standalone app with both middleware layers and the exception handlers."""
    app = FastAPI()
    setup_exception_handlers(app)

    # AccessLogMiddleware innermost (added first), RequestIDMiddleware outermost.
    app.add_middleware(AccessLogMiddleware)
    app.add_middleware(RequestIDMiddleware)

    @app.get("/questions")
    async def _ok():
        return []

    @app.post("/answer")
    async def _fail():
        raise BadRequestError("expected { key, response }")

    @app.get("/boom")
    async def _server_error():
        raise RuntimeError("boom")

    @app.get("/health")
    async def _health():
        return {"ok": True}

    @app.get("/events")
    async def _events():
        return {"stream": True}

    return app


@pytest.fixture()
def client(test_app: FastAPI) -> TestClient:
    return TestClient(test_app, raise_server_exceptions=False)


def _metric_records(caplog):
    return [r for r in caplog.records if "METRIC" in r.message]


class TestAccessLogMiddleware:
    def test_successful_request_logged(self, client, caplog):
        with caplog.at_level(logging.DEBUG, logger="hitl_broker.access"):
            client.get("/questions")
        line = _metric_records(caplog)[0].message
        assert "type=http_request" in line
        assert "method=GET" in line
        assert "path=/questions" in line
        assert "status=200" in line
        assert "wall_ms=" in line

    def test_error_request_logged_with_reason(self, client, caplog):
        with caplog.at_level(logging.DEBUG, logger="hitl_broker.access"):
            client.post("/answer", json={})
        record = _metric_records(caplog)[0]
        assert "status=400" in record.message
        assert "error=expected { key, response }" in record.message
        assert record.levelno == logging.WARNING

    def test_server_error_logged(self, client, caplog):
        with caplog.at_level(logging.DEBUG, logger="hitl_broker.access"):
            resp = client.get("/boom")
        assert resp.status_code == 500
        assert resp.json()["error"] == "internal server error"
        record = _metric_records(caplog)[0]
        assert "status=500" in record.message
        assert record.levelno == logging.ERROR

    @pytest.mark.parametrize("path", ["/health", "/events"])
    def test_skipped_paths(self, client, caplog, path):
        with caplog.at_level(logging.DEBUG, logger="hitl_broker.access"):
            client.get(path)
        assert _metric_records(caplog) == []

    def test_request_id_present(self, client, caplog):
        with caplog.at_level(logging.DEBUG, logger="hitl_broker.access"):
            client.get("/questions")
        line = _metric_records(caplog)[0].message
        assert "req_id=" in line
        assert "req_id=-" not in line

    def test_error_body_carries_request_id(self, client):
        resp = client.post("/answer", json={}, headers={"X-Request-ID": "abc"})
        assert resp.json() == {
            "error": "expected { key, response }",
            "detail": "expected { key, response }",
            "request_id": "abc",
        }

    def test_access_line_matches_response_header(self, client, caplog):
        with caplog.at_level(logging.DEBUG, logger="hitl_broker.access"):
            resp = client.get("/questions", headers={"X-Request-ID": "connect-42"})
        assert resp.headers["x-request-id"] == "connect-42"
        assert "req_id=connect-42" in _metric_records(caplog)[0].message

    def test_unprintable_request_id_replaced(self, client):
        resp = client.get("/questions", headers={"X-Request-ID": "bad id with spaces"})
        echoed = resp.headers["x-request-id"]
        assert echoed != "bad id with spaces"
        assert re.fullmatch(r"[0-9a-f]{32}", echoed)


@pytest.mark.parametrize(
    "raw, kept",
    [(b"abc", True), (b"req-1.2:3_x", True), (b"", False), (None, False), (b"a" * 129, False), (b"a\nb", False)],
)
def test_pick_request_id(raw, kept):
    picked = pick_request_id(raw)
    if kept:
        assert picked == raw.decode()
    else:
        assert re.fullmatch(r"[0-9a-f]{32}", picked)
