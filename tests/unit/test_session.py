import string
import time
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest
from starlette.responses import Response

from auth_gateway.session import COOKIE_NAME, Session, SessionCodec, SessionManager

TOKEN_ALPHABET = string.ascii_letters + string.digits + "-_."


@pytest.fixture
def codec():
    return SessionCodec("codec-test-secret", timedelta(days=7))


def encode_at(codec, session, monkeypatch, when):
    """Encode a session as if the clock read `when` (a unix timestamp)."""
    with monkeypatch.context() as m:
        m.setattr(time, "time", lambda: when)
        return codec.encode(session)


def set_cookie_headers(response):
    return [value.decode("latin-1") for name, value in response.raw_headers if name == b"set-cookie"]


class TestSessionCodec:
    def test_round_trip(self, codec):
        token = codec.encode(Session(username="admin", authenticated=True))

        session = codec.decode(token)

        assert session.username == "admin"
        assert session.authenticated is True
        assert abs(session.issued_at - datetime.now(timezone.utc)) < timedelta(minutes=1)

    def test_round_trip_unauthenticated(self, codec):
        token = codec.encode(Session(username="admin", authenticated=False))

        session = codec.decode(token)

        assert session.authenticated is False

    def test_token_is_cookie_safe(self, codec):
        token = codec.encode(Session(username="ädmin; path=/", authenticated=True))

        assert set(token) <= set(TOKEN_ALPHABET)
        assert codec.decode(token).username == "ädmin; path=/"

    def test_valid_just_before_max_age(self, codec, monkeypatch):
        token = encode_at(
            codec, Session("admin", True), monkeypatch,
            time.time() - timedelta(days=7).total_seconds() + 60,
        )

        assert codec.decode(token) is not None

    def test_expired_after_max_age(self, codec, monkeypatch):
        token = encode_at(
            codec, Session("admin", True), monkeypatch,
            time.time() - timedelta(days=7, seconds=60).total_seconds(),
        )

        assert codec.decode(token) is None

    def test_wrong_secret_rejected(self, codec):
        other = SessionCodec("some-other-secret", timedelta(days=7))
        token = other.encode(Session("admin", True))

        assert codec.decode(token) is None

    def test_every_single_character_change_is_rejected(self, codec):
        token = codec.encode(Session("admin", True))

        for index, original in enumerate(token):
            for replacement in TOKEN_ALPHABET:
                if replacement == original:
                    continue
                tampered = token[:index] + replacement + token[index + 1:]
                assert codec.decode(tampered) is None, f"accepted change at {index}: {replacement!r}"

    @pytest.mark.parametrize("token", [None, "", "garbage", "a.b.c", "....", "ünïcode.token.value"])
    def test_garbage_rejected(self, codec, token):
        assert codec.decode(token) is None

    def test_truncated_token_rejected(self, codec):
        token = codec.encode(Session("admin", True))

        assert codec.decode(token[:-1]) is None
        assert codec.decode(token[1:]) is None


class TestSessionManager:
    def test_issue_sets_cookie(self, config, make_request):
        manager = SessionManager(config)
        response = Response()

        manager.issue(response, make_request("/auth/login", method="POST"), "admin")

        [cookie] = set_cookie_headers(response)
        assert cookie.startswith(f"{COOKIE_NAME}=")
        assert "HttpOnly" in cookie
        assert "Path=/" in cookie
        assert f"Max-Age={7 * 24 * 3600}" in cookie
        assert "SameSite=lax" in cookie
        assert "Secure" not in cookie

    def test_issued_cookie_authenticates(self, config, make_request):
        manager = SessionManager(config)
        response = Response()
        manager.issue(response, make_request(), "admin")
        token = set_cookie_headers(response)[0].split(";")[0].split("=", 1)[1]

        request = make_request(cookies={COOKIE_NAME: token})

        assert manager.is_authenticated(request) is True
        assert manager.current_session(request).username == "admin"

    def test_secure_auto_follows_request_scheme(self, config, make_request):
        manager = SessionManager(config)
        response = Response()

        manager.issue(response, make_request(scheme="https"), "admin")

        assert "Secure" in set_cookie_headers(response)[0]

    def test_secure_forced(self, config, make_request):
        manager = SessionManager(replace(config, cookie_secure=True))
        response = Response()

        manager.issue(response, make_request(scheme="http"), "admin")

        assert "Secure" in set_cookie_headers(response)[0]

    def test_secure_disabled(self, config, make_request):
        manager = SessionManager(replace(config, cookie_secure=False))
        response = Response()

        manager.issue(response, make_request(scheme="https"), "admin")

        assert "Secure" not in set_cookie_headers(response)[0]

    def test_no_cookie_is_unauthenticated(self, config, make_request):
        manager = SessionManager(config)

        assert manager.is_authenticated(make_request()) is False

    def test_unauthenticated_session_is_rejected(self, config, make_request):
        manager = SessionManager(config)
        token = manager.codec.encode(Session("admin", False))

        assert manager.is_authenticated(make_request(cookies={COOKIE_NAME: token})) is False

    def test_revoke_expires_cookie(self, config, make_request):
        manager = SessionManager(config)
        token = manager.codec.encode(Session("admin", True))
        response = Response()

        manager.revoke(response, make_request(cookies={COOKIE_NAME: token}))

        [cookie] = set_cookie_headers(response)
        assert "Max-Age=0" in cookie
        assert "Path=/" in cookie
        value = cookie.split(";")[0].split("=", 1)[1]
        assert manager.is_authenticated(make_request(cookies={COOKIE_NAME: value})) is False

    @pytest.mark.parametrize("cookies", [None, {COOKIE_NAME: "tampered.token.value"}])
    def test_revoke_is_idempotent(self, config, make_request, cookies):
        manager = SessionManager(config)

        first, second = Response(), Response()
        manager.revoke(first, make_request(cookies=cookies))
        first_value = set_cookie_headers(first)[0].split(";")[0].split("=", 1)[1]
        manager.revoke(second, make_request(cookies={COOKIE_NAME: first_value}))

        for response in (first, second):
            [cookie] = set_cookie_headers(response)
            assert "Max-Age=0" in cookie
            value = cookie.split(";")[0].split("=", 1)[1]
            assert manager.is_authenticated(make_request(cookies={COOKIE_NAME: value})) is False
