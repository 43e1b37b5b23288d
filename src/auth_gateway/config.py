"""Configuration loading and parsing."""

import os
import re
import secrets
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any

import httpx
import yaml

from auth_gateway.logging import get_logger

logger = get_logger("config")

DEFAULT_LOGIN_TITLE = "Auth Proxy"
DEFAULT_PORT = 8080
DEFAULT_HOST = "0.0.0.0"
DEFAULT_SESSION_MAX_AGE = timedelta(days=7)
DEFAULT_UPSTREAM_TIMEOUT = 30.0

ENV_PREFIX = "AUTH_PROXY_"

# Setting name -> environment variable suffix
ENV_SETTINGS = {
    "username": "USERNAME",
    "password": "PASSWORD",
    "password_hash": "PASSWORD_HASH",
    "target": "TARGET",
    "cookie_secret": "COOKIE_SECRET",
    "login_title": "LOGIN_TITLE",
    "port": "PORT",
    "session_max_age": "SESSION_MAX_AGE",
    "cookie_secure": "COOKIE_SECURE",
    "upstream_timeout": "UPSTREAM_TIMEOUT",
}


class ConfigError(Exception):
    """Invalid or incomplete gateway configuration."""
    pass


@dataclass(frozen=True)
class GatewayConfig:
    """Immutable gateway configuration, built once at startup."""
    username: str
    target_url: httpx.URL
    session_secret: str = field(repr=False)
    password: str = field(default="", repr=False)
    password_hash: str = field(default="", repr=False)
    session_max_age: timedelta = DEFAULT_SESSION_MAX_AGE
    login_title: str = DEFAULT_LOGIN_TITLE
    port: int = DEFAULT_PORT
    host: str = DEFAULT_HOST
    cookie_secure: bool | None = None
    upstream_timeout: float = DEFAULT_UPSTREAM_TIMEOUT

    @property
    def uses_password_hash(self) -> bool:
        return bool(self.password_hash)


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR} patterns with environment variable values."""
    pattern = r'\$\{([^}]+)\}'

    def replacer(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            raise ConfigError(f"Environment variable not set: {var_name}")
        return env_value

    return re.sub(pattern, replacer, value)


def _substitute_env_vars_recursive(obj):
    """Recursively substitute env vars in a data structure."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _substitute_env_vars_recursive(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_substitute_env_vars_recursive(item) for item in obj]
    return obj


def load_config_file(config_path: str) -> dict[str, Any]:
    """Load raw settings from a YAML file."""
    path = Path(config_path)
    if not path.exists():
        raise ConfigError(f"Config file not found at {config_path}")

    try:
        raw = yaml.safe_load(path.read_text())
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping")

    unknown = set(raw) - set(ENV_SETTINGS)
    if unknown:
        raise ConfigError(f"Unknown config keys: {', '.join(sorted(unknown))}")

    return _substitute_env_vars_recursive(raw)


def settings_from_env(environ: dict[str, str] | None = None) -> dict[str, str]:
    """Collect AUTH_PROXY_* settings that are set and non-empty."""
    environ = os.environ if environ is None else environ
    settings = {}
    for name, suffix in ENV_SETTINGS.items():
        value = environ.get(ENV_PREFIX + suffix)
        if value:
            settings[name] = value
    return settings


def parse_target_url(value: str) -> httpx.URL:
    """Parse the upstream URL. Only absolute http(s) URLs are accepted."""
    try:
        url = httpx.URL(value)
    except (httpx.InvalidURL, TypeError) as e:
        raise ConfigError(f"Invalid target URL: {e}") from e

    if url.scheme not in ("http", "https") or not url.host:
        raise ConfigError(f"Invalid target URL: {value!r} (expected http(s)://host[:port][/path])")
    return url


def parse_cookie_secure(value) -> bool | None:
    """Parse the Secure cookie setting. None means decide per request."""
    if value is None or isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("auto", ""):
        return None
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off"):
        return False
    raise ConfigError(f"Invalid cookie_secure value: {value!r} (expected true, false or auto)")


def _parse_number(name: str, value, kind=int):
    try:
        number = kind(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid {name}: {value!r}") from e
    if number <= 0:
        raise ConfigError(f"Invalid {name}: {value!r} (must be positive)")
    return number


def generate_session_secret() -> str:
    """Generate a random signing secret for this process."""
    return secrets.token_urlsafe(32)


def build_config(settings: dict[str, Any]) -> GatewayConfig:
    """Validate merged raw settings and build a GatewayConfig."""
    username = str(settings.get("username") or "")
    if not username:
        raise ConfigError("AUTH_PROXY_USERNAME is required")

    password = str(settings.get("password") or "")
    password_hash = str(settings.get("password_hash") or "")
    if not password and not password_hash:
        raise ConfigError("Either AUTH_PROXY_PASSWORD or AUTH_PROXY_PASSWORD_HASH is required")
    if password and password_hash:
        logger.warning("Both password and password hash configured; using the password hash")
        password = ""

    target = settings.get("target")
    if not target:
        raise ConfigError("AUTH_PROXY_TARGET is required")
    target_url = parse_target_url(str(target))

    session_secret = str(settings.get("cookie_secret") or "")
    if not session_secret:
        logger.warning(
            "AUTH_PROXY_COOKIE_SECRET not provided, generating random secret; "
            "sessions will not survive a restart"
        )
        session_secret = generate_session_secret()

    max_age = settings.get("session_max_age")
    session_max_age = (
        timedelta(seconds=_parse_number("session_max_age", max_age))
        if max_age is not None else DEFAULT_SESSION_MAX_AGE
    )

    port = settings.get("port")
    timeout = settings.get("upstream_timeout")

    return GatewayConfig(
        username=username,
        password=password,
        password_hash=password_hash,
        target_url=target_url,
        session_secret=session_secret,
        session_max_age=session_max_age,
        login_title=str(settings.get("login_title") or DEFAULT_LOGIN_TITLE),
        port=_parse_number("port", port) if port is not None else DEFAULT_PORT,
        cookie_secure=parse_cookie_secure(settings.get("cookie_secure")),
        upstream_timeout=(
            _parse_number("upstream_timeout", timeout, float)
            if timeout is not None else DEFAULT_UPSTREAM_TIMEOUT
        ),
    )


def load_config(
    config_path: str | None = None,
    overrides: dict[str, Any] | None = None,
    environ: dict[str, str] | None = None,
) -> GatewayConfig:
    """Load configuration from file, environment and overrides (highest wins)."""
    settings: dict[str, Any] = {}
    if config_path:
        settings.update(load_config_file(config_path))
    settings.update(settings_from_env(environ))
    if overrides:
        settings.update({k: v for k, v in overrides.items() if v is not None})
    return build_config(settings)
