"""Authentication gate in front of the forwarder."""

from enum import Enum
from urllib.parse import urlencode, urlsplit

from starlette.requests import Request
from starlette.responses import RedirectResponse, Response

from auth_gateway.proxy import Forwarder, request_path, request_query
from auth_gateway.session import SessionManager

LOGIN_PATH = "/auth/login"


class GateDecision(Enum):
    """Outcome of checking one request."""
    AUTHENTICATED = "authenticated"
    UNAUTHENTICATED = "unauthenticated"


def requested_target(request: Request) -> str:
    """Path and query of the request as the client sent them.

    Raw non-ASCII bytes are percent-encoded so the target survives being
    carried through the login redirect.
    """
    path = request_path(request)
    query = request_query(request)
    return f"{path}?{query}" if query else path


def safe_redirect_target(value: str | None) -> str:
    """Return value if it is a same-origin relative path, else "/".

    Absolute URLs, protocol-relative URLs ("//host") and the backslash
    variants browsers treat the same way are all rejected.
    """
    if not value or not value.startswith("/"):
        return "/"
    if value.startswith("//") or value.startswith("/\\"):
        return "/"
    if any(ord(ch) < 0x20 or ord(ch) == 0x7F for ch in value):
        return "/"

    parts = urlsplit(value)
    if parts.scheme or parts.netloc:
        return "/"
    return value


def login_redirect_url(target: str) -> str:
    """Login URL that returns the user to target after signing in."""
    return f"{LOGIN_PATH}?{urlencode({'redirect': target})}"


class AuthGate:
    """Lets authenticated requests through to the forwarder, redirects the rest."""

    def __init__(self, sessions: SessionManager, forwarder: Forwarder):
        self._sessions = sessions
        self._forwarder = forwarder

    def evaluate(self, request: Request) -> GateDecision:
        if self._sessions.is_authenticated(request):
            return GateDecision.AUTHENTICATED
        return GateDecision.UNAUTHENTICATED

    def redirect_to_login(self, request: Request) -> Response:
        return RedirectResponse(login_redirect_url(requested_target(request)), status_code=302)

    async def handle(self, request: Request) -> tuple[GateDecision, Response]:
        """Evaluate the request and produce the response for it."""
        decision = self.evaluate(request)
        if decision is GateDecision.AUTHENTICATED:
            return decision, await self._forwarder.forward(request)
        return decision, self.redirect_to_login(request)
