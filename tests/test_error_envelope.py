"""Tests for the error body format and application-level behaviour.

Every error response has the shape:
{
    "error": "<stable_code>",
    "message": "<human_readable>",
    "details": <object|array>   # optional
}
"""

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from wayne import app as app_module
from wayne.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
)
from wayne.api.schemas import ErrorBody
from wayne.service.errors import (
    AuthError,
    ConflictError,
    ForbiddenError,
    InternalError,
    NotFoundError,
    RateLimitedError,
    ServiceError,
)
from wayne.service.runtime import get_runtime


@pytest.fixture
def client():
    return TestClient(app_module.app)


class TestErrorBody:
    def test_required_fields(self):
        body = ErrorBody(error="unauthorized", message="invalid or expired token")
        assert body.details is None

    def test_missing_message_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(error="unauthorized")

    def test_details_are_omitted_when_empty(self):
        response = _error_response(404, "not found", details={})
        assert response.body == b'{"error":"not_found","message":"not found"}'


class TestStatusCodes:
    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (429, "rate_limited"),
            (500, "internal_error"),
        ],
    )
    def test_mapping(self, status, code):
        assert _STATUS_TO_CODE[status] == code

    def test_unknown_status_falls_back_to_internal_error(self):
        assert _error_code_for_status(418) == "internal_error"

    @pytest.mark.parametrize(
        "exc,status,code",
        [
            (AuthError("x"), 401, "unauthorized"),
            (ForbiddenError("x"), 403, "forbidden"),
            (NotFoundError("x"), 404, "not_found"),
            (ConflictError("x"), 409, "conflict"),
            (RateLimitedError("x"), 429, "rate_limited"),
            (InternalError("x"), 500, "internal_error"),
        ],
    )
    def test_service_error_taxonomy(self, exc, status, code):
        assert isinstance(exc, ServiceError)
        assert exc.status_code == status
        assert exc.error_code == code


class TestHandlers:
    def test_unknown_route_is_not_found(self, client):
        response = client.get("/api/v1/does-not-exist")
        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    def test_wrong_method(self, client):
        response = client.get("/api/v1/auth/login")
        assert response.status_code == 405
        assert response.json()["error"] == "method_not_allowed"

    def test_validation_details_name_fields(self, client):
        response = client.post("/api/v1/auth/register", json={"email": "a@example.com"})
        assert response.status_code == 400
        fields = [d["field"] for d in response.json()["details"]]
        assert "password" in fields

    def test_malformed_json_is_validation_error(self, client):
        response = client.post(
            "/api/v1/auth/login",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 400

    def test_unexpected_exception_is_generic_500(self, monkeypatch):
        def boom(*args, **kwargs):
            raise RuntimeError("database password is hunter2")

        runtime = get_runtime()
        monkeypatch.setattr(runtime.auth, "refresh", boom)
        client = TestClient(app_module.app, raise_server_exceptions=False)

        response = client.post("/api/v1/auth/refresh", json={"refresh_token": "abc"})

        assert response.status_code == 500
        assert response.json() == {
            "error": "internal_error",
            "message": "internal server error",
        }
        assert "hunter2" not in response.text


class TestMiddleware:
    def test_correlation_id_is_echoed(self, client):
        response = client.get("/health", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

    def test_correlation_id_is_generated(self, client):
        response = client.get("/health")
        assert response.headers["X-Request-ID"]

    def test_security_headers(self, client):
        response = client.post("/api/v1/auth/refresh", json={"refresh_token": "abc"})
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert "no-store" in response.headers["Cache-Control"]


class TestHealth:
    def test_health_reports_checks(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["checks"]["database"]["status"] == "healthy"
        assert data["checks"]["redis"] == {"status": "not_configured"}
        assert data["version"] == app_module.__version__
        assert data["timestamp"]

    def test_health_reports_unhealthy_database(self, client, monkeypatch):
        def broken():
            raise ConnectionError("down")

        monkeypatch.setattr(get_runtime().store, "verify_connection", broken)
        data = client.get("/health").json()
        assert data["status"] == "unhealthy"
        assert data["checks"]["database"]["status"] == "unhealthy"
