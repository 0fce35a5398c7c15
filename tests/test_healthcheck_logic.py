from __future__ import annotations

import asyncio
import json
import pathlib
import sys

ROOT_DIR = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

import pytest  # noqa: E402
from fastapi import HTTPException  # noqa: E402
from fastapi.exceptions import RequestValidationError  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from starlette.requests import Request  # noqa: E402

from app.api import deps  # noqa: E402
from app.main import (  # noqa: E402
    _health_ok,
    app,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)


def test_health_ok_when_postgres_is_up() -> None:
    assert _health_ok({"postgres": "ok"}) is True


def test_health_ok_ignores_disabled_connections() -> None:
    assert _health_ok({"postgres": "disabled"}) is True


def test_health_ok_false_when_enabled_connection_is_down() -> None:
    assert _health_ok({"postgres": "down"}) is False


def test_analysis_routes_are_registered() -> None:
    routes = {
        (getattr(r, "path", ""), method)
        for r in app.router.routes
        for method in (getattr(r, "methods", None) or [])
    }

    for expected in (
        ("/analysis/run", "POST"),
        ("/analysis/queue", "GET"),
        ("/analysis/queue", "POST"),
        ("/analysis/queue", "DELETE"),
        ("/analysis/stop", "POST"),
        ("/analysis/state", "GET"),
        ("/analysis/update", "POST"),
        ("/debug/events", "GET"),
        ("/debug/events", "POST"),
        ("/debug/events", "DELETE"),
        ("/health", "GET"),
    ):
        assert expected in routes


def _request(path: str = "/analysis/run") -> Request:
    return Request({"type": "http", "method": "POST", "path": path, "headers": [], "query_string": b""})


def test_http_errors_use_ok_false_envelope() -> None:
    response = asyncio.run(
        http_exception_handler(_request(), HTTPException(status_code=503, detail="db is off"))
    )

    assert response.status_code == 503
    assert json.loads(response.body) == {"ok": False, "error": "db is off"}


def test_unhandled_errors_become_generic_500() -> None:
    response = asyncio.run(unhandled_exception_handler(_request(), RuntimeError("secret details")))

    assert response.status_code == 500
    assert json.loads(response.body) == {"ok": False, "error": "Internal Server Error"}


def test_validation_errors_become_400_envelope() -> None:
    exc = RequestValidationError(
        [{"loc": ("body", "inns"), "msg": "Input should be a valid list", "type": "list_type"}]
    )

    response = asyncio.run(validation_exception_handler(_request(), exc))

    assert response.status_code == 400
    data = json.loads(response.body)
    assert data["ok"] is False
    assert data["error"] == "Некорректное тело запроса"
    assert data["details"] == [
        {"loc": ["body", "inns"], "msg": "Input should be a valid list", "type": "list_type"}
    ]


@pytest.fixture
def api_client():
    class _Runner:
        def schedule(self) -> bool:
            raise AssertionError("runner must not be scheduled for a rejected body")

    app.dependency_overrides.update(
        {
            deps.get_stores: lambda: object(),
            deps.get_event_log: lambda: object(),
            deps.get_integration_client: lambda: None,
            deps.get_runner: lambda: _Runner(),
        }
    )
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.mark.parametrize(
    "kwargs",
    [
        {"content": b"not json", "headers": {"Content-Type": "application/json"}},
        {"json": {"inns": "7707083893"}},
    ],
)
def test_malformed_run_body_is_400_not_422(api_client: TestClient, kwargs) -> None:
    response = api_client.post("/analysis/run", **kwargs)

    assert response.status_code == 400
    data = response.json()
    assert data["ok"] is False
    assert data["details"]
