"""
Security Module
===============

Token utilities shared by the webhook gate and the sync endpoints:
- shared-secret comparison
- JWT shape detection
- end-user identity token decoding (Supabase-issued JWTs)
"""

import hmac
from typing import Any, Optional

from jose import JWTError, jwt

from app.config import settings


def secrets_match(provided: Optional[str], expected: Optional[str]) -> bool:
    """
    Constant-time comparison of a provided token against a configured secret.

    Empty values never match.
    """
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def strip_bearer(value: Optional[str]) -> Optional[str]:
    """Return the token part of an ``Authorization`` value, or None if blank."""
    if not value:
        return None
    value = value.strip()
    scheme, _, rest = value.partition(" ")
    if scheme.lower() == "bearer":
        value = rest.strip()
    return value or None


def looks_like_jwt(token: str) -> bool:
    """
    Check whether a token has the three-segment shape of a signed JWT.

    Only the shape is checked, not the signature.
    """
    parts = token.split(".")
    return len(parts) == 3 and all(parts)


def decode_token(token: str) -> Optional[dict[str, Any]]:
    """
    Decode and validate an end-user identity token.

    Args:
        token: JWT issued by the identity provider

    Returns:
        Decoded payload if valid, None otherwise
    """
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            audience=settings.JWT_AUDIENCE,
        )
        return payload
    except JWTError:
        return None
