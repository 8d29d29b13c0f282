# tests/test_middleware.py
"""Tests for app/transport/middleware.py: request ID, logging, error handling."""
from __future__ import annotations

from unittest.mock import patch

from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.transport.middleware import (
    ErrorHandlingMiddleware,
    RequestIDMiddleware,
    RequestLoggingMiddleware,
)


def _build_app(raise_for: set[str] | None = None, log_requests: bool = False):
    """Build a minimal FastAPI app with middleware for testing."""
    app = FastAPI()
    # Order matters: ErrorHandling wraps RequestID
    app.add_middleware(ErrorHandlingMiddleware)
    app.add_middleware(RequestLoggingMiddleware, enabled=log_requests)
    app.add_middleware(RequestIDMiddleware)

    raise_for = raise_for or set()

    @app.get("/test")
    def test_endpoint():
        if "/test" in raise_for:
            raise RuntimeError("boom")
        return {"ok": True}

    @app.post("/jobs/{job_id}/accept")
    def accept_endpoint(job_id: str):
        if "/accept" in raise_for:
            raise RuntimeError("accept boom")
        return {"id": job_id}

    return app


# ============================================================================
# RequestIDMiddleware
# ============================================================================

class TestRequestIDMiddleware:
    def test_generates_request_id(self):
        client = TestClient(_build_app())
        resp = client.get("/test")
        assert resp.status_code == 200
        rid = resp.headers["X-Request-ID"]
        assert len(rid) == 32  # uuid4 hex

    def test_preserves_existing_request_id(self):
        client = TestClient(_build_app())
        custom_id = "my-custom-request-id-123"
        resp = client.get("/test", headers={"X-Request-ID": custom_id})
        assert resp.headers["X-Request-ID"] == custom_id

    def test_truncates_long_request_id(self):
        client = TestClient(_build_app())
        resp = client.get("/test", headers={"X-Request-ID": "r" * 500})
        assert resp.headers["X-Request-ID"] == "r" * 128


# ============================================================================
# RequestLoggingMiddleware
# ============================================================================

class TestRequestLoggingMiddleware:
    @patch("app.transport.middleware.observe_histogram")
    def test_records_duration_when_enabled(self, mock_observe):
        client = TestClient(_build_app(log_requests=True))
        resp = client.post("/jobs/j1/accept", headers={"X-Actor-Id": "agent-1"})
        assert resp.json() == {"id": "j1"}
        mock_observe.assert_called_once()
        assert mock_observe.call_args[0][0] == "http_request_duration_ms"
        assert mock_observe.call_args[1] == {"method": "POST"}

    @patch("app.transport.middleware.observe_histogram")
    def test_disabled_is_passthrough(self, mock_observe):
        client = TestClient(_build_app(log_requests=False))
        assert client.get("/test").status_code == 200
        mock_observe.assert_not_called()


# ============================================================================
# ErrorHandlingMiddleware
# ============================================================================

class TestErrorHandlingMiddleware:
    def test_normal_request_passes_through(self):
        client = TestClient(_build_app(), raise_server_exceptions=False)
        resp = client.get("/test")
        assert resp.status_code == 200
        assert resp.json() == {"ok": True}

    def test_generic_error_returns_500(self):
        client = TestClient(_build_app(raise_for={"/test"}), raise_server_exceptions=False)
        resp = client.get("/test")
        assert resp.status_code == 500
        data = resp.json()
        assert data["error"] == "Internal server error"
        assert "request_id" in data
        assert "boom" not in resp.text

    def test_error_carries_request_id(self):
        client = TestClient(_build_app(raise_for={"/accept"}, log_requests=True), raise_server_exceptions=False)
        resp = client.post("/jobs/j1/accept", headers={"X-Request-ID": "trace-42"})
        assert resp.status_code == 500
        assert resp.json()["request_id"] == "trace-42"
