"""Shared fixtures."""

import bcrypt
import httpx
import pytest
from starlette.requests import Request

from auth_gateway.config import GatewayConfig


TEST_SECRET = "test-session-secret-0123456789abcdef"


@pytest.fixture
def config():
    return GatewayConfig(
        username="admin",
        password="s3cret",
        target_url=httpx.URL("http://upstream.test"),
        session_secret=TEST_SECRET,
    )


@pytest.fixture
def hashed_config():
    # Low cost factor keeps the tests fast
    password_hash = bcrypt.hashpw(b"s3cret", bcrypt.gensalt(rounds=4)).decode("utf-8")
    return GatewayConfig(
        username="admin",
        password_hash=password_hash,
        target_url=httpx.URL("http://upstream.test"),
        session_secret=TEST_SECRET,
    )


@pytest.fixture
def make_request():
    """Build a Starlette request from a minimal ASGI scope."""

    def _make(
        path: str = "/",
        method: str = "GET",
        query_string: bytes = b"",
        cookies: dict[str, str] | None = None,
        headers: list[tuple[bytes, bytes]] | None = None,
        body: bytes = b"",
        scheme: str = "http",
    ) -> Request:
        raw_headers = [(b"host", b"gateway.test")]
        if cookies:
            cookie = "; ".join(f"{name}={value}" for name, value in cookies.items())
            raw_headers.append((b"cookie", cookie.encode("latin-1")))
        if body:
            raw_headers.append((b"content-length", str(len(body)).encode("ascii")))
        raw_headers.extend(headers or [])

        scope = {
            "type": "http",
            "method": method,
            "scheme": scheme,
            "path": path,
            "raw_path": path.encode("latin-1"),
            "root_path": "",
            "query_string": query_string,
            "headers": raw_headers,
            "server": ("gateway.test", 443 if scheme == "https" else 80),
            "client": ("203.0.113.7", 51000),
        }

        sent = False

        async def receive():
            nonlocal sent
            if sent:
                return {"type": "http.disconnect"}
            sent = True
            return {"type": "http.request", "body": body, "more_body": False}

        return Request(scope, receive)

    return _make
