"""Tests for the error envelope and the exception handlers."""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError as PydanticValidationError

from oauthabl.api.error_handling import (
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from oauthabl.api.schemas import Envelope, ErrorBody
from oauthabl.service.errors import NotFoundError, PartialWriteError
from oauthabl.storage.errors import StoreUnavailable


class TestErrorBody:
    def test_unknown_code_rejected(self):
        with pytest.raises(PydanticValidationError):
            ErrorBody(code="teapot", message="no")

    def test_envelope_status_pattern(self):
        with pytest.raises(PydanticValidationError):
            Envelope(status="maybe")


def test_status_mapping():
    assert _error_code_for_status(401) == "unauthorized"
    assert _error_code_for_status(422) == "validation_error"
    assert _error_code_for_status(418) == "server_error"


def test_error_response_shape():
    response = _error_response(404, "not found")
    assert response.status_code == 404
    assert b'"code":"not_found"' in response.body


@pytest.fixture
def probe_client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/missing")
    async def missing():
        raise NotFoundError("not found")

    @app.get("/store-down")
    async def store_down():
        raise StoreUnavailable("store unavailable", {"op": "get", "key": "email:c1:a@b.co"})

    @app.get("/partial")
    async def partial():
        raise PartialWriteError(
            "internal server error",
            completed_steps=["username_index"],
            failed_step="user_record",
        )

    @app.get("/boom")
    async def boom():
        raise RuntimeError("kaboom")

    return TestClient(app, raise_server_exceptions=False)


def test_service_error_is_enveloped(probe_client):
    body = probe_client.get("/missing").json()
    assert body["status"] == "error"
    assert body["error"]["code"] == "not_found"
    assert body["request_id"]


def test_store_error_hides_details(probe_client):
    response = probe_client.get("/store-down")
    assert response.status_code == 500
    body = response.json()
    assert body["error"] == {
        "code": "server_error",
        "message": "internal server error",
        "details": None,
    }


def test_partial_write_reports_steps(probe_client):
    response = probe_client.get("/partial")
    assert response.status_code == 500
    assert response.json()["error"]["details"] == {
        "completed_steps": ["username_index"],
        "failed_step": "user_record",
    }


def test_uncaught_exception_is_generic(probe_client):
    response = probe_client.get("/boom")
    assert response.status_code == 500
    assert response.json()["error"]["message"] == "internal server error"
