"""Passcode hashing and JWT verification.

Tokens are issued by the external auth service; this module only decodes
them to identify the calling actor. Meeting passcodes are stored as bcrypt
hashes and verified with a real hash comparison.

Uses bcrypt directly (not passlib) for Python 3.13 compatibility.
"""

from __future__ import annotations

import bcrypt
from jose import JWTError, jwt

from src.livemeet.config import get_settings

# ── Passcode Hashing ─────────────────────────────────────────────────────────


def hash_passcode(passcode: str) -> str:
    """Hash a plaintext meeting passcode using bcrypt."""
    salt = bcrypt.gensalt()
    return bcrypt.hashpw(passcode.encode("utf-8"), salt).decode("utf-8")


def verify_passcode(plain: str | None, hashed: str) -> bool:
    """Verify a plaintext passcode against its bcrypt hash.

    A missing passcode or a malformed stored hash never verifies.
    """
    if not plain:
        return False
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# ── JWT Token Verification ────────────────────────────────────────────────────


class InvalidTokenError(Exception):
    """Raised when an access token cannot be decoded or lacks a subject."""


def verify_token(token: str, token_type: str = "access") -> dict:
    """Decode and validate a JWT token.

    Args:
        token: The JWT string.
        token_type: Expected token type claim.

    Returns:
        The decoded payload dict.

    Raises:
        InvalidTokenError: If the token is invalid, expired, or wrong type.
    """
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
        )
    except JWTError as exc:
        raise InvalidTokenError("Could not validate credentials") from exc

    if payload.get("type", token_type) != token_type:
        raise InvalidTokenError("Unexpected token type")
    if not payload.get("sub"):
        raise InvalidTokenError("Token has no subject")
    return payload
