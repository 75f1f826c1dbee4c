"""Tests for the error envelope format and exception handlers.

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
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from caldost.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from caldost.api.schemas import Envelope, ErrorBody
from caldost.service.errors import (
    AccessLinkInvalidError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    TransientError,
    ValidationError,
)
from caldost.service.fs import PathTraversalError
from caldost.storage.errors import ConstraintViolation


class TestErrorBody:
    """Tests for the ErrorBody Pydantic model."""

    def test_error_body_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.code == "unauthorized"
        assert error.details is None

    def test_error_body_with_details_list(self):
        error = ErrorBody(
            code="validation_error",
            message="Multiple errors",
            details=[{"field": "email"}, {"field": "password"}],
        )
        assert len(error.details) == 2

    def test_error_body_rejects_unknown_code(self):
        """Only the stable codes are accepted."""
        with pytest.raises(PydanticValidationError):
            ErrorBody(code="rate_limited", message="nope")

    def test_error_body_missing_message_raises(self):
        with pytest.raises(PydanticValidationError):
            ErrorBody(code="server_error")


class TestEnvelope:
    """Tests for the Envelope model."""

    def test_envelope_ok_status(self):
        envelope = Envelope(status="ok", data={"complaint_number": "EDU-2026-0001"})
        assert envelope.error is None

    def test_envelope_request_id_auto_generated(self):
        envelope = Envelope(status="ok")
        assert len(envelope.request_id) == 36

    def test_envelope_invalid_status_raises(self):
        with pytest.raises(PydanticValidationError):
            Envelope(status="success")


class TestErrorCodeMapping:
    """HTTP status to stable error code."""

    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (500, "server_error"),
            (503, "unavailable"),
        ],
    )
    def test_known_statuses(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"

    def test_every_mapped_code_is_valid(self):
        for code in set(_STATUS_TO_CODE.values()):
            ErrorBody(code=code, message="ok")

    def test_error_response_null_details(self):
        response = _error_response(404, "Not found", details=None)
        data = json.loads(response.body.decode())
        assert data["status"] == "error"
        assert data["error"] == {"code": "not_found", "message": "Not found", "details": None}
        assert "request_id" in data


class _Body(BaseModel):
    name: str


def _app_raising(exc: Exception) -> FastAPI:
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/boom")
    async def boom():
        raise exc

    @app.post("/body")
    async def body(payload: _Body):
        return {"name": payload.name}

    return app


class TestExceptionHandlers:
    """Service and storage errors render as envelopes with the right status."""

    @pytest.mark.parametrize(
        "exc,status,code",
        [
            (ValidationError("Nothing to update"), 400, "validation_error"),
            (AccessLinkInvalidError(), 401, "unauthorized"),
            (AuthorizationError(), 403, "forbidden"),
            (NotFoundError("Complaint not found"), 404, "not_found"),
            (ConflictError("Complaint is already closed or resolved"), 409, "conflict"),
            (TransientError("secret store unavailable"), 503, "unavailable"),
            (ConstraintViolation("email already exists", {"field": "email"}), 409, "conflict"),
            (PathTraversalError("path traversal detected"), 400, "validation_error"),
        ],
    )
    def test_errors_render_envelope(self, exc, status, code):
        client = TestClient(_app_raising(exc))
        response = client.get("/boom")
        assert response.status_code == status
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == code
        assert body["error"]["message"] == str(exc)

    def test_plain_http_exception(self):
        response = TestClient(_app_raising(HTTPException(404, "missing"))).get("/boom")
        assert response.json()["error"] == {
            "code": "not_found",
            "message": "missing",
            "details": None,
        }

    def test_request_validation_is_400(self):
        response = TestClient(_app_raising(ValueError())).post("/body", json={})
        assert response.status_code == 400
        body = response.json()
        assert body["error"]["code"] == "validation_error"
        assert body["error"]["details"]["errors"]

    def test_validation_details_do_not_echo_input(self):
        response = TestClient(_app_raising(ValueError())).post("/body", json={"name": 42})
        errors = response.json()["error"]["details"]["errors"]
        assert errors[0]["field"] == "name"
        assert set(errors[0]) == {"field", "message"}

    def test_unknown_route_uses_envelope(self):
        response = TestClient(_app_raising(ValueError())).get("/nowhere")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"
