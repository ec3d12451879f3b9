"""Shared pytest fixtures for http-reconciler tests."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import pytest

from http_reconciler.core.client import HttpDetails, HttpRequest, HttpResponse
from http_reconciler.reconcile.models import DesiredSpec, HttpResource

BASE_URL = "https://api.example.com/users"
ITEM_URL = f"{BASE_URL}/123"
USER_BODY = '{"username": ".payload.body.username", "email": ".payload.body.email"}'
ITEM_URL_TEMPLATE = '(.payload.baseUrl + "/" + .response.body.id)'
FIXED_NOW = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "live: mark test as requiring a live HTTP endpoint"
    )


class FakeHttpClient:
    """In-memory stand-in for ``HttpClient``.

    Responses are queued per ``(method, url)``; the last queued response
    for a route is repeated.  Queue an exception to have ``send`` raise it.
    """

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], list[Any]] = {}
        self.calls: list[HttpRequest] = []
        self.call_kwargs: list[dict[str, Any]] = []

    def add(self, method: str, url: str, status: int = 200, body: str = "") -> None:
        self.routes.setdefault((method, url), []).append(
            HttpResponse(status_code=status, headers={}, body=body)
        )

    def fail(self, method: str, url: str, exc: Exception) -> None:
        self.routes.setdefault((method, url), []).append(exc)

    def send(
        self,
        method: str,
        url: str,
        body: str = "",
        headers: dict[str, list[str]] | None = None,
        skip_tls_verify: bool = False,
        timeout: float | None = None,
    ) -> HttpDetails:
        request = HttpRequest(method=method, url=url, body=body, headers=dict(headers or {}))
        self.calls.append(request)
        self.call_kwargs.append({"skip_tls_verify": skip_tls_verify, "timeout": timeout})

        queue = self.routes.get((method, url))
        if not queue:
            raise AssertionError(f"unexpected request: {method} {url}")
        outcome = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(outcome, Exception):
            raise outcome
        return HttpDetails(request=request, response=outcome)

    def close(self) -> None:
        pass

    @property
    def methods(self) -> list[str]:
        return [call.method for call in self.calls]


def make_spec(**overrides: Any) -> DesiredSpec:
    """Build the standard user-resource spec, with top-level overrides."""
    data: dict[str, Any] = {
        "payload": {
            "baseUrl": BASE_URL,
            "body": {"username": "john_doe", "email": "a@b.com"},
        },
        "headers": {"Content-Type": ["application/json"]},
        "mappings": {
            "create": {"method": "POST", "url": ".payload.baseUrl", "body": USER_BODY},
            "get": {"method": "GET", "url": ITEM_URL_TEMPLATE},
            "update": {"method": "PUT", "url": ITEM_URL_TEMPLATE, "body": USER_BODY},
            "delete": {"method": "DELETE", "url": ITEM_URL_TEMPLATE},
        },
    }
    data.update(overrides)
    return DesiredSpec.model_validate(data)


@pytest.fixture
def fake_client() -> FakeHttpClient:
    return FakeHttpClient()


@pytest.fixture
def spec() -> DesiredSpec:
    return make_spec()


@pytest.fixture
def resource(spec: DesiredSpec) -> HttpResource:
    """A declared user resource that has never been reconciled."""
    return HttpResource(name="demo-user", spec=spec)


@pytest.fixture
def clock():
    return lambda: FIXED_NOW
