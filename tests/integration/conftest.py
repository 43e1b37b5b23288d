"""Fixtures for integration tests.

The gateway runs in-process under Starlette's TestClient and reaches the mock
upstream application over httpx's ASGI transport, so no network is needed.
"""

import httpx
import pytest
from starlette.testclient import TestClient

from auth_gateway.main import create_app
from mock_upstream.server import app as upstream_app
from mock_upstream.server import request_log


UPSTREAM_URL = "http://upstream.test"


@pytest.fixture
def upstream_client():
    """httpx client wired straight into the mock upstream app."""
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=upstream_app))


@pytest.fixture
def gateway_app(config, upstream_client):
    return create_app(config, client=upstream_client)


@pytest.fixture
def gateway(gateway_app):
    """Client for the gateway. Redirects are returned, not followed."""
    return TestClient(gateway_app, follow_redirects=False)


@pytest.fixture
def upstream():
    """Client talking to the mock upstream directly, bypassing the gateway."""
    return TestClient(upstream_app)


@pytest.fixture
def logged_in(gateway):
    response = gateway.post("/auth/login", data={"username": "admin", "password": "s3cret"})
    assert response.status_code == 302
    return gateway


@pytest.fixture(autouse=True)
def clear_upstream_log():
    """Clear the mock upstream request log before each test."""
    request_log.clear()
    yield
