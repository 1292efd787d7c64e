"""Error responses share one envelope and never leak internals."""
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import BaseModel

from magiclink.api.error_handling import register_exception_handlers
from magiclink.api.schemas import ErrorBody
from magiclink.service.errors import (
    AuthenticationError,
    BackendUnavailableError,
    ThrottledError,
    ValidationError,
)


class _Payload(BaseModel):
    value: int


@pytest.fixture
def error_client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/validation")
    async def validation():
        raise ValidationError("bad input", detail={"field": "email"})

    @app.get("/unauthorized")
    async def unauthorized():
        raise AuthenticationError("Not authenticated.")

    @app.get("/throttled")
    async def throttled():
        raise ThrottledError("slow down")

    @app.get("/backend")
    async def backend():
        raise BackendUnavailableError("Try again later.", detail={"backend": "redis"})

    @app.get("/boom")
    async def boom():
        raise RuntimeError("connection pool exhausted at 10.0.0.5")

    @app.post("/body")
    async def body(payload: _Payload):
        return payload

    return TestClient(app, raise_server_exceptions=False)


@pytest.mark.parametrize(
    "path,status,code",
    [
        ("/validation", 400, "validation_error"),
        ("/unauthorized", 401, "unauthorized"),
        ("/throttled", 429, "rate_limited"),
        ("/backend", 500, "server_error"),
    ],
)
def test_service_errors_map_to_codes(error_client, path, status, code):
    response = error_client.get(path)
    assert response.status_code == status
    body = response.json()
    assert body["status"] == "error"
    assert body["error"]["code"] == code
    assert "request_id" in body


def test_client_error_details_kept(error_client):
    body = error_client.get("/validation").json()
    assert body["error"]["details"] == {"field": "email"}


def test_server_error_details_dropped(error_client):
    body = error_client.get("/backend").json()
    assert body["error"]["details"] is None
    assert "redis" not in str(body)


def test_uncaught_exception_hides_message(error_client):
    response = error_client.get("/boom")
    assert response.status_code == 500
    body = response.json()
    assert body["error"]["code"] == "server_error"
    assert "10.0.0.5" not in str(body)


def test_request_validation_is_400(error_client):
    response = error_client.post("/body", json={"value": "not-a-number"})
    assert response.status_code == 400
    body = response.json()
    assert body["error"]["code"] == "validation_error"
    assert body["error"]["details"][0]["loc"] == ["body", "value"]
    assert "not-a-number" not in str(body)


def test_error_body_rejects_unknown_code():
    with pytest.raises(ValueError):
        ErrorBody(code="teapot", message="x")


def test_unmatched_route_is_not_found(error_client):
    response = error_client.get("/no-such-route")
    assert response.status_code == 404
    body = response.json()
    assert body["status"] == "error"
    assert body["error"]["code"] == "not_found"
    assert "detail" not in body


def test_wrong_method_is_method_not_allowed(error_client):
    response = error_client.post("/validation")
    assert response.status_code == 405
    assert response.json()["error"]["code"] == "method_not_allowed"
