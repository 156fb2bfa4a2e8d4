"""Credential utilities for huddle: passwords and session tokens."""

import hashlib
import os
import re
import secrets

# Iteration count for PBKDF2-SHA256. Overridable so test suites stay fast.
DEFAULT_PASSWORD_ITERATIONS = 240_000

_STRONG_PASSWORD = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[\W_]).{8,}$")


def _iterations() -> int:
    return int(os.environ.get("HUDDLE_PASSWORD_ITERATIONS", DEFAULT_PASSWORD_ITERATIONS))


def is_strong_password(password: str) -> bool:
    """At least 8 chars with upper, lower, digit and special character."""
    return bool(_STRONG_PASSWORD.match(password or ""))


def hash_password(password: str) -> str:
    """Hash a password for storage. Format: pbkdf2_sha256$<iterations>$<salt>$<hash>."""
    iterations = _iterations()
    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), iterations)
    return f"pbkdf2_sha256${iterations}${salt}${digest.hex()}"


def verify_password(password: str, stored: str) -> bool:
    """Verify a password against its stored hash."""
    try:
        scheme, iterations, salt, expected = stored.split("$", 3)
    except ValueError:
        return False
    if scheme != "pbkdf2_sha256":
        return False
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), int(iterations))
    return secrets.compare_digest(digest.hex(), expected)


def generate_token() -> str:
    """Generate a new opaque session token (64 hex chars = 32 bytes)."""
    return secrets.token_hex(32)


def hash_token(token: str) -> str:
    """Hash a token for storage/comparison. Returns full SHA-256."""
    return hashlib.sha256(token.encode()).hexdigest()
