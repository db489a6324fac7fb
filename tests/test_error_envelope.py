"""Tests for the error envelope format and error handling.

Error responses have the stable shape:
{
    "status": "error",
    "error": {
        "code": "<stable_code>",
        "message": "<human_readable>",
        "details": <object|array|null>
    },
    "request_id": "<uuid>"
}
"""

import json
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from grantportal import app as app_module
from grantportal.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
)
from grantportal.api.schemas import Envelope, ErrorBody
from grantportal.service.errors import (
    AccountLocked,
    CsrfMismatch,
    InvalidCredentials,
    PermissionDenied,
    RefreshUnavailable,
    SessionMissing,
)


@pytest.fixture
def client():
    return TestClient(app_module.app)


class TestErrorBody:
    """Tests for the ErrorBody Pydantic model."""

    def test_error_body_required_fields(self):
        error = ErrorBody(code="invalid_credentials", message="invalid credentials")
        assert error.code == "invalid_credentials"
        assert error.details is None

    def test_domain_codes_accepted(self):
        for code in ("account_locked", "account_inactive", "csrf_mismatch", "session_missing", "refresh_unavailable"):
            assert ErrorBody(code=code, message="x").code == code

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="totally_made_up", message="x")

    def test_error_body_missing_message_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")


class TestEnvelope:
    def test_envelope_request_id_auto_generated(self):
        envelope = Envelope(status="ok")
        assert len(envelope.request_id) == 36  # UUID format

    def test_envelope_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="success")


class TestErrorCodeMapping:
    def test_locked_status_maps_to_account_locked(self):
        assert _error_code_for_status(423) == "account_locked"

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"
        assert _error_code_for_status(503) == "server_error"

    def test_every_mapped_code_is_valid(self):
        for code in _STATUS_TO_CODE.values():
            ErrorBody(code=code, message="x")


class TestDomainErrors:
    """Service exceptions pin their status and stable code."""

    @pytest.mark.parametrize(
        "exc, status, code",
        [
            (InvalidCredentials(), 401, "invalid_credentials"),
            (RefreshUnavailable(), 401, "refresh_unavailable"),
            (SessionMissing(), 403, "session_missing"),
            (CsrfMismatch(), 403, "csrf_mismatch"),
            (PermissionDenied(), 403, "forbidden"),
        ],
    )
    def test_status_and_code(self, exc, status, code):
        assert exc.status_code == status
        assert exc.error_code == code

    def test_account_locked_carries_lock_until(self):
        until = datetime(2030, 1, 1, tzinfo=timezone.utc)
        exc = AccountLocked(until)
        assert exc.status_code == 423
        assert exc.detail == {"lockUntil": "2030-01-01T00:00:00+00:00"}


class TestErrorResponseFactory:
    def test_error_response_shape(self):
        response = _error_response(423, "locked", {"lockUntil": "x"}, code="account_locked")
        body = json.loads(response.body)
        assert response.status_code == 423
        assert body["status"] == "error"
        assert body["error"] == {"code": "account_locked", "message": "locked", "details": {"lockUntil": "x"}}
        assert body["request_id"]


class TestHandlers:
    """Exceptions raised behind the routes render as envelopes."""

    def test_validation_error_is_400_envelope(self, client):
        response = client.post("/v1/auth/login", json={"email": "a@example.com"})
        assert response.status_code == 400
        body = response.json()
        assert body["error"]["code"] == "validation_error"
        assert any("password" in item["loc"] for item in body["error"]["details"])

    def test_unauthenticated_request_gets_bearer_challenge(self, client):
        response = client.get("/v1/auth/profile")
        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"
        assert response.json()["error"]["code"] == "unauthorized"

    def test_request_id_echoed(self, client):
        response = client.get("/v1/auth/profile", headers={"X-Request-ID": "req-abc"})
        assert response.headers["X-Request-ID"] == "req-abc"
        assert response.json()["request_id"] == "req-abc"
