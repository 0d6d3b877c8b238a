"""
JWT verification for bearer tokens issued by the auth service.

Connected players carry a ``stake_key`` claim, guests an ``anon_id`` claim.
Verification uses the RS256 public key, or a shared secret when the
configured algorithm is HMAC-based.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import jwt

from trivia.config import get_settings

_public_key: str | None = None


def _load_verification_key() -> str:
    """Load the public key from disk (cached after first call), or return the shared secret."""
    global _public_key  # noqa: PLW0603
    settings = get_settings()
    if settings.jwt_algorithm.startswith("HS"):
        return settings.jwt_secret
    if _public_key is None:
        _public_key = Path(settings.jwt_public_key_path).read_text()
    return _public_key


def reset_keys() -> None:
    """Reset cached keys (useful for testing)."""
    global _public_key  # noqa: PLW0603
    _public_key = None


def verify_token(token: str) -> dict[str, Any]:
    """
    Verify and decode a bearer token.

    Returns:
        Decoded payload dictionary.

    Raises:
        jwt.InvalidTokenError: If the token is invalid, expired, or carries no identity.
    """
    settings = get_settings()
    try:
        payload: dict[str, Any] = jwt.decode(
            token,
            _load_verification_key(),
            algorithms=[settings.jwt_algorithm],
            issuer=settings.jwt_issuer,
            options={"require": ["sub", "exp"]},
        )
    except jwt.ExpiredSignatureError:
        msg = "Token has expired"
        raise jwt.InvalidTokenError(msg) from None

    if not payload.get("stake_key") and not payload.get("anon_id"):
        msg = "Token carries neither stake_key nor anon_id"
        raise jwt.InvalidTokenError(msg)
    return payload
