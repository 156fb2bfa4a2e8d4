"""Pluggable credential verification for huddle.

By default bearer tokens are the opaque session tokens issued by
/api/login and /api/register, looked up in the message store's sessions
table. A different verifier can be configured via:

- HUDDLE_AUTH_MODULE: Python module path for custom auth (e.g., 'myapp.auth')

Custom auth modules must expose:
- verify_bearer_token(token: str) -> AuthResult
- extract_bearer_token(authorization: str | None) -> str | None (optional)

The AuthResult dataclass is provided by this module for custom implementations.
"""

import importlib
import os
from dataclasses import dataclass

from . import db
from .auth import generate_token, hash_password, hash_token, is_strong_password, verify_password
from .errors import AuthError, ValidationError


@dataclass
class AuthResult:
    """Result of an authentication attempt."""

    valid: bool
    user_id: str | None = None
    name: str | None = None
    email: str | None = None
    avatar: str | None = None
    error: str | None = None


def _get_auth_module():
    """Get the configured custom auth module, or None for built-in sessions."""
    custom_module = os.environ.get("HUDDLE_AUTH_MODULE")
    if custom_module:
        try:
            return importlib.import_module(custom_module)
        except ImportError as e:
            raise ImportError(f"Failed to import auth module '{custom_module}': {e}") from e
    return None


def verify_bearer_token(token: str) -> AuthResult:
    """
    Verify a bearer token.

    Args:
        token: The bearer token to verify

    Returns:
        AuthResult with validation status and user identity
    """
    module = _get_auth_module()
    if module is not None:
        return module.verify_bearer_token(token)

    if not token:
        return AuthResult(valid=False, error="Empty token")

    user = db.get_session_user(hash_token(token))
    if user is None:
        return AuthResult(valid=False, error="Invalid or expired token")

    return AuthResult(
        valid=True,
        user_id=user["id"],
        name=user["name"],
        email=user["email"],
        avatar=user["avatar"],
    )


def extract_bearer_token(authorization: str | None) -> str | None:
    """
    Extract bearer token from Authorization header.

    Uses custom module's implementation if available, otherwise default.

    Args:
        authorization: The full Authorization header value

    Returns:
        The token if valid Bearer format, None otherwise
    """
    module = _get_auth_module()
    if module and hasattr(module, "extract_bearer_token"):
        return module.extract_bearer_token(authorization)

    if not authorization:
        return None

    parts = authorization.split(" ", 1)
    if len(parts) != 2:
        return None

    scheme, token = parts
    if scheme.lower() != "bearer":
        return None

    return token.strip()


def get_auth_method_name() -> str:
    """Get the name of the current auth method for logging/debugging."""
    custom_module = os.environ.get("HUDDLE_AUTH_MODULE")
    if custom_module:
        return f"custom:{custom_module}"
    return "sessions"


# --- Built-in account operations ---


def register_user(
    email: str,
    password: str,
    avatar: str | None = None,
    name: str | None = None,
    ttl_hours: int = 24 * 7,
) -> tuple[dict, str]:
    """Create an account and open a session for it.

    Returns:
        (user, token) tuple.

    Raises:
        ValidationError: Missing fields, weak password, or email taken.
    """
    if not email or not password:
        raise ValidationError("Email and password required")
    if not is_strong_password(password):
        raise ValidationError(
            "Password must be at least 8 characters and include uppercase, "
            "lowercase, number, and special character."
        )

    try:
        user = db.create_user(email, hash_password(password), name=name, avatar=avatar)
    except ValueError as e:
        raise ValidationError(str(e)) from e

    token = generate_token()
    db.create_session(user["id"], hash_token(token), ttl_hours)
    return user, token


def login_user(email: str, password: str, ttl_hours: int = 24 * 7) -> tuple[dict, str]:
    """Check credentials and open a new session.

    Raises:
        AuthError: Unknown email or wrong password.
    """
    if not email or not password:
        raise ValidationError("Email and password required")

    record = db.get_user_credentials(email)
    if record is None or not verify_password(password, record.pop("password_hash")):
        raise AuthError("Invalid credentials")

    token = generate_token()
    db.create_session(record["id"], hash_token(token), ttl_hours)
    return record, token
