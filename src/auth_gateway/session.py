"""Stateless session cookies.

A session lives entirely in the client's ``auth-session`` cookie. The cookie
value is a signed, timestamped token; the server keeps no session table and
rebuilds the session from the token on every request.
"""

import hashlib
from dataclasses import dataclass
from datetime import datetime, timedelta

from itsdangerous import BadData, URLSafeTimedSerializer
from itsdangerous.encoding import base64_decode, base64_encode
from starlette.requests import Request
from starlette.responses import Response

from auth_gateway.config import GatewayConfig
from auth_gateway.logging import get_logger, truncate_secret

logger = get_logger("session")

COOKIE_NAME = "auth-session"
TOKEN_SALT = "auth-session"


class SessionError(Exception):
    """A session could not be written to the response."""
    pass


@dataclass(frozen=True)
class Session:
    """One authenticated (or revoked) browser session."""
    username: str
    authenticated: bool
    issued_at: datetime | None = None


def _is_canonical(token: str) -> bool:
    """Check every token segment is canonical unpadded URL-safe base64.

    Decoders ignore the spare low bits of the last symbol, so without this
    two different tokens could carry the same bytes.
    """
    for segment in token.split("."):
        if not segment:
            continue
        try:
            if base64_encode(base64_decode(segment)).decode("ascii") != segment:
                return False
        except (BadData, UnicodeError):
            return False
    return True


class SessionCodec:
    """Encodes sessions into tamper-evident, cookie-safe tokens."""

    def __init__(self, secret: str, max_age: timedelta):
        self._max_age = max_age
        self._serializer = URLSafeTimedSerializer(
            secret,
            salt=TOKEN_SALT,
            signer_kwargs={"digest_method": hashlib.sha256},
        )

    @property
    def max_age(self) -> timedelta:
        return self._max_age

    def encode(self, session: Session) -> str:
        """Sign the session. The issue time is taken from the current clock."""
        payload = {"u": session.username, "a": session.authenticated}
        try:
            return self._serializer.dumps(payload)
        except (TypeError, ValueError) as e:
            raise SessionError(f"Failed to encode session: {e}") from e

    def decode(self, token: str | None) -> Session | None:
        """Return the session carried by token, or None if it is not valid.

        Missing, malformed, forged and expired tokens all give None.
        """
        if not token:
            return None

        if not _is_canonical(token):
            logger.debug(f"Rejected non-canonical session token {truncate_secret(token)}")
            return None

        try:
            payload, issued_at = self._serializer.loads(
                token,
                max_age=self._max_age.total_seconds(),
                return_timestamp=True,
            )
        except BadData as e:
            logger.debug(f"Rejected session token {truncate_secret(token)}: {type(e).__name__}")
            return None

        if not isinstance(payload, dict):
            return None
        username = payload.get("u")
        authenticated = payload.get("a")
        if not isinstance(username, str) or not isinstance(authenticated, bool):
            return None

        return Session(username=username, authenticated=authenticated, issued_at=issued_at)


class SessionManager:
    """Issues, revokes and checks the session cookie."""

    def __init__(self, config: GatewayConfig, codec: SessionCodec | None = None):
        self._cookie_secure = config.cookie_secure
        self._codec = codec or SessionCodec(config.session_secret, config.session_max_age)

    @property
    def codec(self) -> SessionCodec:
        return self._codec

    def _secure(self, request: Request) -> bool:
        if self._cookie_secure is None:
            return request.url.scheme == "https"
        return self._cookie_secure

    def issue(self, response: Response, request: Request, username: str) -> None:
        """Attach a new authenticated session cookie to the response.

        Raises:
            SessionError: If the session token cannot be created.
        """
        token = self._codec.encode(Session(username=username, authenticated=True))
        response.set_cookie(
            COOKIE_NAME,
            token,
            max_age=int(self._codec.max_age.total_seconds()),
            path="/",
            secure=self._secure(request),
            httponly=True,
            samesite="lax",
        )

    def revoke(self, response: Response, request: Request) -> None:
        """Replace the session cookie with an expired, unauthenticated one.

        Works the same whether or not the request carried a valid session.
        """
        current = self.current_session(request)
        username = current.username if current else ""
        try:
            token = self._codec.encode(Session(username=username, authenticated=False))
        except SessionError as e:
            logger.error(f"Error encoding revoked session: {e}")
            token = ""

        response.set_cookie(
            COOKIE_NAME,
            token,
            max_age=0,
            expires=0,
            path="/",
            secure=self._secure(request),
            httponly=True,
            samesite="lax",
        )

    def current_session(self, request: Request) -> Session | None:
        """Decode the session cookie on the request, if any."""
        return self._codec.decode(request.cookies.get(COOKIE_NAME))

    def is_authenticated(self, request: Request) -> bool:
        """True iff the request carries a valid, authenticated session."""
        session = self.current_session(request)
        return session is not None and session.authenticated
