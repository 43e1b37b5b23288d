"""Main entry point for the authentication gateway."""

import argparse
import getpass
import os
import sys
import time
from typing import Any

import httpx
import uvicorn
from starlette.requests import Request
from starlette.websockets import WebSocketClose

from auth_gateway.auth import CredentialValidator, hash_password
from auth_gateway.config import ConfigError, GatewayConfig, load_config
from auth_gateway.gate import AuthGate, GateDecision
from auth_gateway.handlers import STATIC_PREFIX, Handlers
from auth_gateway.logging import format_request_log, get_logger, setup_logging
from auth_gateway.proxy import Forwarder
from auth_gateway.session import SessionManager


Scope = dict[str, Any]
Receive = Any
Send = Any

logger = get_logger("main")


def create_app(config: GatewayConfig, client: httpx.AsyncClient | None = None):
    """Create the ASGI application."""
    validator = CredentialValidator(config)
    sessions = SessionManager(config)
    forwarder = Forwarder(config, client=client)
    gate = AuthGate(sessions, forwarder)
    handlers = Handlers(config, validator, sessions)

    async def handle_lifespan(scope: Scope, receive: Receive, send: Send) -> None:
        while True:
            message = await receive()
            if message["type"] == "lifespan.startup":
                await send({"type": "lifespan.startup.complete"})
            elif message["type"] == "lifespan.shutdown":
                await forwarder.aclose()
                await send({"type": "lifespan.shutdown.complete"})
                return

    async def app(scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "lifespan":
            await handle_lifespan(scope, receive, send)
            return
        if scope["type"] == "websocket":
            await WebSocketClose()(scope, receive, send)
            return
        if scope["type"] != "http":
            return

        path = scope["path"]
        start = time.monotonic()

        if path == STATIC_PREFIX or path.startswith(STATIC_PREFIX + "/"):
            await handlers.static(scope, receive, send)
            return

        request = Request(scope, receive)
        if path == "/auth/login":
            route, response = "login", await handlers.login(request)
        elif path == "/auth/logout":
            route, response = "logout", await handlers.logout(request)
        elif path == "/auth/health":
            route, response = "health", await handlers.health(request)
        else:
            decision, response = await gate.handle(request)
            route = "proxy" if decision is GateDecision.AUTHENTICATED else "login-redirect"

        await response(scope, receive, send)

        duration_ms = int((time.monotonic() - start) * 1000)
        logger.info(format_request_log(scope["method"], path, route, response.status_code, duration_ms))

    return app


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="auth-gateway",
        description="Require a login session in front of an HTTP application.",
    )
    parser.add_argument("--config", default=os.environ.get("CONFIG_PATH"), help="YAML config file")
    parser.add_argument("-u", "--username", help="Username for authentication")
    parser.add_argument("-p", "--password", help="Password for authentication")
    parser.add_argument("--password-hash", help="Bcrypt hash of password (replaces password)")
    parser.add_argument("-t", "--target", help="Target application URL to proxy to")
    parser.add_argument("--cookie-secret", help="Secret key for signing session cookies")
    parser.add_argument("--login-title", help="Custom title for the login page")
    parser.add_argument("--port", type=int, help="Port to run the auth gateway on")
    parser.add_argument("--session-max-age", type=int, help="Session lifetime in seconds")
    parser.add_argument("--cookie-secure", choices=["true", "false", "auto"], help="Secure flag on the session cookie")
    parser.add_argument("--upstream-timeout", type=float, help="Upstream request timeout in seconds")
    parser.add_argument(
        "--hash-password",
        action="store_true",
        help="Prompt for a password, print its bcrypt hash and exit",
    )
    return parser


def _print_password_hash() -> int:
    password = getpass.getpass("Password: ")
    if password != getpass.getpass("Repeat password: "):
        print("Error: passwords do not match", file=sys.stderr)
        return 1
    try:
        print(hash_password(password))
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return 0


def main(argv: list[str] | None = None):
    """Run the gateway server."""
    args = build_parser().parse_args(argv)
    if args.hash_password:
        sys.exit(_print_password_hash())

    setup_logging()

    overrides = {
        "username": args.username,
        "password": args.password,
        "password_hash": args.password_hash,
        "target": args.target,
        "cookie_secret": args.cookie_secret,
        "login_title": args.login_title,
        "port": args.port,
        "session_max_age": args.session_max_age,
        "cookie_secure": args.cookie_secure,
        "upstream_timeout": args.upstream_timeout,
    }
    try:
        config = load_config(args.config, overrides=overrides)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    app = create_app(config)
    print(f"Starting auth gateway on port {config.port}")
    print(f"  Proxying to: {config.target_url}")
    print(f"  Login page: http://{config.host}:{config.port}/auth/login")
    uvicorn.run(app, host=config.host, port=config.port, proxy_headers=True)


if __name__ == "__main__":
    main()
