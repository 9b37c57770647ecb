"""Tests for the error envelope and the public error translation boundary.

Error responses look like:
{
    "status": "error",
    "error": {"code": "<UPPER_CASE>", "message": "<public message>", "details": ...},
    "request_id": "<uuid>"
}
"""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError

from expensebuddy.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    register_exception_handlers,
    to_public_error,
)
from expensebuddy.api.routes import _http_error
from expensebuddy.api.schemas import Envelope, ErrorBody
from expensebuddy.service.errors import (
    AlreadyProcessedError,
    InvalidCredentialsError,
    ServerError,
    StaleTokenError,
    ValidationError as ServiceValidationError,
)
from expensebuddy.storage.errors import ConstraintViolation


class TestErrorBody:
    def test_upper_case_code_required(self):
        assert ErrorBody(code="INVALID_TOKEN", message="x").code == "INVALID_TOKEN"
        with pytest.raises(ValidationError):
            ErrorBody(code="invalid_token", message="x")

    def test_envelope_generates_request_id(self):
        envelope = Envelope(status="ok", data={"a": 1})
        assert envelope.request_id
        with pytest.raises(ValidationError):
            Envelope(status="maybe")

    def test_every_mapped_code_is_valid(self):
        for code in _STATUS_TO_CODE.values():
            ErrorBody(code=code, message="x")
        assert _error_code_for_status(418) == "INTERNAL_SERVER_ERROR"


class TestTranslation:
    def test_internal_message_is_not_forwarded(self):
        exc = StaleTokenError("user 42 email changed from a@x.com at 12:00")
        status, body = to_public_error(exc)

        assert status == 400
        assert body.code == "STALE_TOKEN"
        assert "a@x.com" not in body.message
        assert body.message == StaleTokenError.public_message

    def test_detail_is_forwarded(self):
        exc = ServiceValidationError("bad", detail={"field": "email"})
        status, body = to_public_error(exc)
        assert body.details == {"field": "email"}

    def test_unknown_exception_becomes_generic_500(self):
        status, body = to_public_error(KeyError("secret_column"))
        assert status == 500
        assert body.code == "INTERNAL_SERVER_ERROR"
        assert "secret_column" not in body.message

    def test_constraint_violation_is_conflict(self):
        status, body = to_public_error(ConstraintViolation("dup key (email)=(x)"))
        assert status == 409
        assert body.code == "CONFLICT"
        assert "dup key" not in body.message


@pytest.fixture
def probe_client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/credentials")
    async def credentials():
        raise InvalidCredentialsError("user pat@example.com bad password")

    @app.get("/processed")
    async def processed():
        raise AlreadyProcessedError("request r1 was APPROVED by o1")

    @app.get("/crash")
    async def crash():
        raise RuntimeError("psycopg: connection to 10.0.0.5 failed")

    @app.get("/server")
    async def server():
        raise ServerError("owner assignment failed")

    @app.get("/limited")
    async def limited():
        raise _http_error("RATE_LIMITED", "Too many requests, please try again later", 429)

    @app.get("/typed/{value}")
    async def typed(value: int):
        return {"value": value}

    return TestClient(app, raise_server_exceptions=False)


class TestHandlers:
    def test_service_error_envelope(self, probe_client):
        response = probe_client.get("/credentials")
        body = response.json()

        assert response.status_code == 401
        assert body["status"] == "error"
        assert body["error"]["code"] == "INVALID_CREDENTIALS"
        assert "pat@example.com" not in response.text
        assert body["request_id"]

    def test_conflict_envelope(self, probe_client):
        response = probe_client.get("/processed")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "REQUEST_ALREADY_PROCESSED"
        assert "o1" not in response.json()["error"]["message"]

    def test_unhandled_exception_is_generic(self, probe_client):
        response = probe_client.get("/crash")

        assert response.status_code == 500
        assert response.json()["error"] == {
            "code": "INTERNAL_SERVER_ERROR",
            "message": "An error occurred",
            "details": None,
        }
        assert "10.0.0.5" not in response.text

    def test_server_error_hides_message(self, probe_client):
        response = probe_client.get("/server")
        assert response.status_code == 500
        assert "owner assignment" not in response.text

    def test_http_error_envelope_passthrough(self, probe_client):
        response = probe_client.get("/limited")
        assert response.status_code == 429
        assert response.json()["error"]["code"] == "RATE_LIMITED"

    def test_request_validation_is_400(self, probe_client):
        response = probe_client.get("/typed/not-a-number")
        body = response.json()

        assert response.status_code == 400
        assert body["error"]["code"] == "VALIDATION_ERROR"
        assert body["error"]["details"][0]["loc"] == ["path", "value"]

    def test_unknown_route_is_404_envelope(self, probe_client):
        response = probe_client.get("/nowhere")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"
