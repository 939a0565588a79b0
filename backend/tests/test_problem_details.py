import asyncio
import json

from starlette.requests import Request

from app.api.problem_details import (
    PROBLEM_TYPE_DOMAIN,
    PROBLEM_TYPE_SERVER,
    PROBLEM_TYPE_VALIDATION,
    problem_details,
)
from app.main import app
from tests.conftest import ADMIN_AUTH


def test_rate_limit_returns_problem_details(client):
    limiter = app.state.services.rate_limiter
    previous_limit = limiter.limit
    asyncio.run(limiter.reset())
    limiter.limit = 1
    try:
        first = client.get("/v1/projects/prj_missing")
        assert first.status_code == 401
        second = client.get("/v1/projects/prj_missing")
        assert second.status_code == 429
        assert second.headers["content-type"].startswith("application/problem+json")
        body = second.json()
        assert body["title"] == "Too Many Requests"
        assert body["type"].endswith("rate-limit")
        assert body["request_id"]
    finally:
        limiter.limit = previous_limit
        asyncio.run(limiter.reset())


def test_health_paths_skip_rate_limit(client):
    limiter = app.state.services.rate_limiter
    previous_limit = limiter.limit
    limiter.limit = 1
    try:
        statuses = [client.get("/healthz").status_code for _ in range(3)]
    finally:
        limiter.limit = previous_limit
        asyncio.run(limiter.reset())

    assert statuses == [200, 200, 200]


def _build_request(headers: list[tuple[bytes, bytes]] | None = None) -> Request:
    scope = {"type": "http", "headers": headers or [], "path": "/test", "method": "GET"}
    return Request(scope)


def test_problem_details_422_maps_to_validation_type():
    request = _build_request()
    response = problem_details(
        request=request,
        status=422,
        title=None,
        detail="Validation failed",
    )
    payload = json.loads(response.body)
    assert payload["type"] == PROBLEM_TYPE_VALIDATION
    assert payload["status"] == 422
    assert payload["title"] == "Unprocessable Entity"
    assert payload["request_id"]


def test_problem_details_non_422_maps_to_domain_type():
    request = _build_request()
    response = problem_details(
        request=request,
        status=402,
        title=None,
        detail="Payment required",
        code="payment_required",
    )
    payload = json.loads(response.body)
    assert payload["type"] == PROBLEM_TYPE_DOMAIN
    assert payload["status"] == 402
    assert payload["code"] == "payment_required"


def test_problem_details_omits_code_when_absent():
    response = problem_details(request=_build_request(), status=409, title="Conflict", detail="nope")
    payload = json.loads(response.body)
    assert "code" not in payload
    assert payload["errors"] == []


def test_problem_details_server_type_and_request_id_header():
    request = _build_request([(b"x-request-id", b"req-abc")])
    response = problem_details(request=request, status=503, title=None, detail="down")
    payload = json.loads(response.body)
    assert payload["type"] == PROBLEM_TYPE_SERVER
    assert payload["request_id"] == "req-abc"
    assert response.headers["X-Request-ID"] == "req-abc"


def test_validation_errors_render_as_problem(client):
    response = client.post("/v1/admin/projects/prj_missing/mark-paid", json={}, auth=ADMIN_AUTH)

    assert response.status_code == 422
    body = response.json()
    assert body["type"] == PROBLEM_TYPE_VALIDATION
    assert body["errors"]
