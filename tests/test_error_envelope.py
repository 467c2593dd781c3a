"""Tests for the error envelope format and error handling.

Every error response has the shape:
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

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError

from courseauth.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from courseauth.api.schemas import Envelope, ErrorBody
from courseauth.service.errors import (
    BadCredentialsError,
    DuplicateEmailError,
    RoleNotInitializedError,
    TokenExpiredError,
)
from courseauth.service.errors import ValidationError as ServiceValidationError
from courseauth.storage.errors import ConstraintViolation


class TestErrorBody:
    """Tests for the ErrorBody Pydantic model."""

    def test_error_body_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.code == "unauthorized"
        assert error.message == "Invalid credentials"
        assert error.details is None

    def test_error_body_with_details_list(self):
        error = ErrorBody(
            code="validation_error",
            message="Multiple errors",
            details=[{"field": "email"}, {"field": "password"}],
        )
        assert len(error.details) == 2

    def test_error_body_missing_code_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(message="Error occurred")

    def test_error_body_rejects_unknown_code(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")

    def test_token_expired_is_a_stable_code(self):
        assert ErrorBody(code="token_expired", message="expired").code == "token_expired"


class TestEnvelope:
    def test_envelope_error_status(self):
        envelope = Envelope(status="error", error=ErrorBody(code="unauthorized", message="Invalid token"))
        assert envelope.status == "error"
        assert envelope.error.code == "unauthorized"
        assert envelope.data is None

    def test_envelope_request_id_auto_generated(self):
        envelope = Envelope(status="ok")
        assert len(envelope.request_id) == 36  # UUID format

    def test_envelope_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="pending")


class TestErrorCodeMapping:
    @pytest.mark.parametrize(
        "status_code,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (422, "validation_error"),
            (500, "server_error"),
        ],
    )
    def test_status_mapping(self, status_code, code):
        assert _error_code_for_status(status_code) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"
        assert _error_code_for_status(503) == "server_error"

    def test_mapped_codes_are_valid_error_codes(self):
        for code in set(_STATUS_TO_CODE.values()):
            ErrorBody(code=code, message="ok")


class TestErrorResponseFactory:
    def test_error_response_basic(self):
        response = _error_response(401, "Invalid credentials")
        data = json.loads(response.body.decode())
        assert response.status_code == 401
        assert data["status"] == "error"
        assert data["error"]["code"] == "unauthorized"
        assert data["error"]["message"] == "Invalid credentials"
        assert data["request_id"]

    def test_error_response_custom_code(self):
        response = _error_response(400, "expired", code="token_expired")
        data = json.loads(response.body.decode())
        assert data["error"]["code"] == "token_expired"

    def test_error_response_null_details(self):
        response = _error_response(404, "Not found", details=None)
        data = json.loads(response.body.decode())
        assert data["error"]["details"] is None


@pytest.fixture
def error_client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/bad-credentials")
    async def bad_credentials():
        raise BadCredentialsError()

    @app.get("/duplicate")
    async def duplicate():
        raise DuplicateEmailError()

    @app.get("/invalid")
    async def invalid():
        raise ServiceValidationError(
            errors=[{"field": "email", "message": "invalid email address"}]
        )

    @app.get("/expired")
    async def expired():
        raise TokenExpiredError()

    @app.get("/role-missing")
    async def role_missing():
        raise RoleNotInitializedError("USER")

    @app.get("/constraint")
    async def constraint():
        raise ConstraintViolation("email already exists", field="email")

    @app.get("/typed")
    async def typed(limit: int):
        return {"limit": limit}

    @app.get("/boom")
    async def boom():
        raise RuntimeError("kaboom")

    return TestClient(app, raise_server_exceptions=False)


class TestExceptionHandlers:
    def test_bad_credentials(self, error_client):
        response = error_client.get("/bad-credentials")
        assert response.status_code == 401
        assert response.json()["error"] == {
            "code": "unauthorized",
            "message": "bad credentials",
            "details": {},
        }

    def test_duplicate_email(self, error_client):
        response = error_client.get("/duplicate")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"
        assert response.json()["error"]["details"] == {"field": "email"}

    def test_validation_error_lists_fields(self, error_client):
        response = error_client.get("/invalid")
        assert response.status_code == 400
        body = response.json()["error"]
        assert body["code"] == "validation_error"
        assert body["details"]["errors"][0]["field"] == "email"

    def test_token_expired(self, error_client):
        response = error_client.get("/expired")
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "token_expired"

    def test_role_not_initialized(self, error_client):
        response = error_client.get("/role-missing")
        assert response.status_code == 500
        assert response.json()["error"]["message"] == "Role USER wasn't initialized"

    def test_constraint_violation_is_conflict(self, error_client):
        response = error_client.get("/constraint")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_request_validation_uses_envelope(self, error_client):
        response = error_client.get("/typed", params={"limit": "many"})
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert error["details"]["errors"][0]["field"] == "limit"

    def test_unknown_route(self, error_client):
        response = error_client.get("/nowhere")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_unhandled_exception_is_server_error(self, error_client):
        response = error_client.get("/boom")
        assert response.status_code == 500
        assert response.json()["error"] == {
            "code": "server_error",
            "message": "internal server error",
            "details": None,
        }
