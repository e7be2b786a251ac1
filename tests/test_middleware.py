# tests/test_middleware.py
"""Tests for app/transport/middleware.py: request ID, logging, error handling."""
from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.transport.middleware import (
    ErrorHandlingMiddleware,
    RequestIDMiddleware,
    RequestLoggingMiddleware,
)


def _build_app(raise_for: set[str] | None = None):
    """Build a minimal FastAPI app with middleware for testing."""
    app = FastAPI()
    # Order matters: ErrorHandling wraps RequestID
    app.add_middleware(ErrorHandlingMiddleware)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)

    raise_for = raise_for or set()

    @app.get("/test")
    def test_endpoint():
        if "/test" in raise_for:
            raise RuntimeError("boom")
        return {"ok": True}

    @app.post("/tasks")
    def tasks_endpoint():
        if "/tasks" in raise_for:
            raise RuntimeError("dispatch boom")
        return {"ok": True}

    return app


# ============================================================================
# RequestIDMiddleware
# ============================================================================

class TestRequestIDMiddleware:
    def test_generates_request_id(self):
        app = _build_app()
        client = TestClient(app)
        resp = client.get("/test")
        assert resp.status_code == 200
        assert "X-Request-ID" in resp.headers
        rid = resp.headers["X-Request-ID"]
        assert len(rid) == 32  # uuid4().hex

    def test_preserves_existing_request_id(self):
        app = _build_app()
        client = TestClient(app)
        custom_id = "my-custom-request-id-123"
        resp = client.get("/test", headers={"X-Request-ID": custom_id})
        assert resp.status_code == 200
        assert resp.headers["X-Request-ID"] == custom_id

    def test_malformed_request_id_replaced(self):
        client = TestClient(_build_app())
        resp = client.get("/test", headers={"X-Request-ID": "not a valid id!"})
        rid = resp.headers["X-Request-ID"]
        assert rid != "not a valid id!"
        assert len(rid) == 32


# ============================================================================
# RequestLoggingMiddleware
# ============================================================================

class TestRequestLoggingMiddleware:
    def test_logs_user_id_from_header(self, caplog):
        app = _build_app()
        client = TestClient(app)
        with caplog.at_level(logging.INFO, logger="app.transport.middleware"):
            client.post("/tasks", headers={"X-User-Id": "alice"})

        completed = [r for r in caplog.records if "Request completed" in r.getMessage()]
        assert completed
        assert completed[0].user_id == "alice"
        assert completed[0].status_code == 200


# ============================================================================
# ErrorHandlingMiddleware
# ============================================================================

class TestErrorHandlingMiddleware:
    def test_normal_request_passes_through(self):
        app = _build_app()
        client = TestClient(app, raise_server_exceptions=False)
        resp = client.get("/test")
        assert resp.status_code == 200
        assert resp.json() == {"ok": True}

    def test_task_route_error_returns_500(self):
        app = _build_app(raise_for={"/tasks"})
        client = TestClient(app, raise_server_exceptions=False)
        resp = client.post("/tasks")
        assert resp.status_code == 500
        assert resp.json()["error"] == "Internal server error"

    def test_generic_error_returns_500(self):
        app = _build_app(raise_for={"/test"})
        client = TestClient(app, raise_server_exceptions=False)
        resp = client.get("/test")
        assert resp.status_code == 500
        data = resp.json()
        assert "error" in data
        assert "request_id" in data


class TestRequestContext:
    def test_task_id_taken_from_path(self):
        from app.transport.middleware import task_id_from_path
        assert task_id_from_path("/tasks/abc-123/send") == "abc-123"
        assert task_id_from_path("/tasks") is None
        assert task_id_from_path("/dashboard") is None

    def test_health_is_logged_quietly(self, caplog):
        app = _build_app()

        @app.get("/health")
        def health():
            return {"status": "healthy"}

        client = TestClient(app)
        with caplog.at_level(logging.INFO, logger="app.transport.middleware"):
            client.get("/health")
        assert not [r for r in caplog.records if "/health" in r.getMessage()]

    def test_requests_are_counted(self):
        from app.infra.metrics import get_metrics_collector
        client = TestClient(_build_app())
        client.get("/test")
        client.get("/test")
        assert get_metrics_collector().counter_value("http_requests", method="GET", status=200) == 2
