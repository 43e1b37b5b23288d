"""Credential validation."""

import hmac

import bcrypt

from auth_gateway.config import GatewayConfig
from auth_gateway.logging import get_logger

logger = get_logger("auth")

MAX_BCRYPT_PASSWORD_BYTES = 72


class CredentialValidator:
    """Checks submitted credentials against the configured user."""

    def __init__(self, config: GatewayConfig):
        self._username = config.username.encode("utf-8")
        self._password = config.password.encode("utf-8")
        self._password_hash = config.password_hash.encode("utf-8")

    def validate(self, username: str, password: str) -> bool:
        """Return True iff both username and password match.

        A configured password hash takes precedence over the plaintext password.
        """
        if not hmac.compare_digest(username.encode("utf-8"), self._username):
            return False

        if self._password_hash:
            candidate = password.encode("utf-8")
            # bcrypt only looks at the first 72 bytes
            if len(candidate) > MAX_BCRYPT_PASSWORD_BYTES:
                return False
            try:
                return bcrypt.checkpw(candidate, self._password_hash)
            except ValueError:
                logger.error("Configured password hash is not a valid bcrypt hash")
                return False

        return hmac.compare_digest(password.encode("utf-8"), self._password)


def hash_password(password: str) -> str:
    """Hash password using bcrypt."""
    salt = bcrypt.gensalt()
    hashed = bcrypt.hashpw(password.encode("utf-8"), salt)
    return hashed.decode("utf-8")
