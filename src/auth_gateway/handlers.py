"""HTTP handlers for the login, logout, health and static routes."""

import json
from pathlib import Path

from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException
from starlette.formparsers import MultiPartException
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse, PlainTextResponse, RedirectResponse, Response
from starlette.staticfiles import StaticFiles
from starlette.types import Receive, Scope, Send

from auth_gateway.auth import CredentialValidator
from auth_gateway.config import GatewayConfig
from auth_gateway.gate import LOGIN_PATH, safe_redirect_target
from auth_gateway.logging import get_logger
from auth_gateway.session import SessionError, SessionManager

logger = get_logger("handlers")

STATIC_DIR = Path(__file__).parent / "static"
STATIC_PREFIX = "/static"
LOGIN_ERROR = "Invalid username or password"


def render_login_page(template: str, title: str, error: str = "") -> str:
    """Inject the login page settings as window.AUTH_CONFIG before </head>."""
    settings = json.dumps({"title": title, "error": error})
    # Keep "</script>" and friends out of the inline script
    settings = settings.replace("<", "\\u003c").replace(">", "\\u003e").replace("&", "\\u0026")
    script = f"<script>window.AUTH_CONFIG = {settings};</script>"
    return template.replace("</head>", f"{script}</head>", 1)


class Handlers:
    """Request handlers for the /auth routes and bundled assets."""

    def __init__(
        self,
        config: GatewayConfig,
        validator: CredentialValidator,
        sessions: SessionManager,
        static_dir: Path = STATIC_DIR,
    ):
        self._config = config
        self._validator = validator
        self._sessions = sessions
        self._login_template = (static_dir / "index.html").read_text(encoding="utf-8")
        self._static = StaticFiles(directory=static_dir, html=True)

    def render_login(self, error: str = "", status_code: int = 200) -> Response:
        page = render_login_page(self._login_template, self._config.login_title, error)
        return HTMLResponse(page, status_code=status_code)

    async def login(self, request: Request) -> Response:
        """GET renders the form, POST checks credentials and starts a session."""
        if request.method in ("GET", "HEAD"):
            return self.render_login()
        if request.method != "POST":
            return PlainTextResponse("Method Not Allowed", status_code=405, headers={"Allow": "GET, HEAD, POST"})

        try:
            form = await request.form()
        except MultiPartException as e:
            logger.info(f"Malformed login form: {e.message}")
            return PlainTextResponse("Bad Request", status_code=400)

        username = str(form.get("username") or "")
        password = str(form.get("password") or "")

        # bcrypt is slow on purpose; keep it off the event loop
        valid = await run_in_threadpool(self._validator.validate, username, password)
        if not valid:
            logger.info("Failed login attempt")
            return self.render_login(LOGIN_ERROR)

        redirect = request.query_params.get("redirect") or form.get("redirect")
        response = RedirectResponse(
            safe_redirect_target(redirect if isinstance(redirect, str) else None),
            status_code=302,
        )
        try:
            self._sessions.issue(response, request, username)
        except SessionError as e:
            logger.error(f"Error creating session: {e}")
            return PlainTextResponse("Internal server error", status_code=500)

        logger.info(f"User {username} logged in")
        return response

    async def logout(self, request: Request) -> Response:
        """Expire the session cookie and go back to the login page."""
        if request.method not in ("GET", "POST"):
            return PlainTextResponse("Method Not Allowed", status_code=405, headers={"Allow": "GET, POST"})

        response = RedirectResponse(LOGIN_PATH, status_code=302)
        self._sessions.revoke(response, request)
        return response

    async def health(self, request: Request) -> Response:
        return JSONResponse({"status": "ok"})

    async def static(self, scope: Scope, receive: Receive, send: Send) -> None:
        """Serve bundled assets below /static."""
        scope = dict(scope)
        scope["root_path"] = scope.get("root_path", "") + STATIC_PREFIX
        if scope["path"] == STATIC_PREFIX:
            scope["path"] = STATIC_PREFIX + "/"
        try:
            await self._static(scope, receive, send)
        except HTTPException as e:
            response = PlainTextResponse(e.detail, status_code=e.status_code, headers=e.headers)
            await response(scope, receive, send)
