"""Error envelope format and exception-to-response mapping.

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
from fastapi.testclient import TestClient
from pydantic import ValidationError

from identifier.api.error_handling import _STATUS_TO_CODE, _error_code_for_status, _error_response
from identifier.api.schemas import Envelope, ErrorBody
from identifier.app import create_app
from identifier.service.errors import (
    AccountLockedError,
    DuplicateEmailError,
    EmailNotVerifiedError,
    InvalidCredentialsError,
    InvalidOrExpiredTokenError,
    StoreError,
)
from identifier.storage.errors import ConstraintViolation


class TestErrorBody:
    def test_known_code_is_accepted(self):
        error = ErrorBody(code="invalid_credentials", message="invalid email or password")
        assert error.details is None

    def test_unknown_code_is_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="no")

    def test_envelope_status_is_constrained(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")


class TestStatusMapping:
    @pytest.mark.parametrize(
        "status,code",
        [(400, "validation_error"), (401, "unauthorized"), (409, "conflict"), (422, "validation_error")],
    )
    def test_status_to_code(self, status, code):
        assert _STATUS_TO_CODE[status] == code
        assert _error_code_for_status(status) == code

    @pytest.mark.parametrize("status", [405, 415, 418, 429])
    def test_unmapped_client_status_is_validation_error(self, status):
        assert _error_code_for_status(status) == "validation_error"

    @pytest.mark.parametrize("status", [502, 503])
    def test_unmapped_server_status_is_server_error(self, status):
        assert _error_code_for_status(status) == "server_error"

    def test_error_response_body(self):
        response = _error_response(403, "account locked or suspended", code="account_locked")
        body = json.loads(response.body)

        assert response.status_code == 403
        assert body["status"] == "error"
        assert body["error"] == {
            "code": "account_locked",
            "message": "account locked or suspended",
            "details": None,
        }
        assert body["request_id"]


@pytest.mark.parametrize(
    "exc,status,code",
    [
        (DuplicateEmailError(), 409, "duplicate_email"),
        (InvalidCredentialsError(), 401, "invalid_credentials"),
        (AccountLockedError(), 403, "account_locked"),
        (EmailNotVerifiedError(), 403, "email_not_verified"),
        (InvalidOrExpiredTokenError(), 401, "invalid_or_expired_token"),
        (StoreError("storage failure"), 500, "store_failure"),
    ],
)
def test_service_errors_carry_status_and_code(exc, status, code):
    assert exc.status_code == status
    assert exc.error_code == code


@pytest.fixture
def client(runtime):
    with TestClient(create_app(runtime=runtime), raise_server_exceptions=False) as test_client:
        yield test_client


def _register_body(**overrides):
    body = {"email": "a@x.com", "password": "pw12345!", "first_name": "A", "last_name": "B"}
    body.update(overrides)
    return body


class TestHandlers:
    def test_request_validation_uses_envelope(self, client):
        response = client.post("/v1/auth/register", json=_register_body(email="not-an-email"))

        assert response.status_code == 422
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "validation_error"
        assert isinstance(body["error"]["details"], list)

    def test_service_error_uses_its_code(self, client):
        client.post("/v1/auth/register", json=_register_body())
        response = client.post("/v1/auth/register", json=_register_body())

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "duplicate_email"

    def test_constraint_violation_maps_to_conflict(self, client, runtime, monkeypatch):
        async def collide(**kwargs):
            raise ConstraintViolation("user id already exists", {"field": "user_id"})

        monkeypatch.setattr(runtime.identities, "register", collide)
        response = client.post("/v1/auth/register", json=_register_body())

        assert response.status_code == 409
        assert response.json()["error"] == {
            "code": "conflict",
            "message": "user id already exists",
            "details": {"field": "user_id"},
        }

    def test_missing_bearer_is_unauthorized(self, client):
        response = client.get("/v1/me")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_unexpected_exception_is_opaque(self, client, runtime, monkeypatch):
        async def explode(**kwargs):
            raise RuntimeError("password column is NULL for a@x.com")

        monkeypatch.setattr(runtime.identities, "login", explode)
        response = client.post("/v1/auth/login", json={"email": "a@x.com", "password": "pw12345!"})

        assert response.status_code == 500
        body = response.json()
        assert body["error"]["code"] == "server_error"
        assert body["error"]["message"] == "internal server error"
        assert "a@x.com" not in response.text

    def test_wrong_method_uses_envelope(self, client):
        response = client.post("/healthz")

        assert response.status_code == 405
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "validation_error"
        assert "GET" in response.headers["allow"]

    def test_unknown_route_uses_envelope(self, client):
        response = client.get("/v1/nowhere")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"
