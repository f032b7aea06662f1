"""
Webhook Authentication Gate
===========================

RevenueCat authenticates webhooks with a static shared secret.  The
hosting platform may validate the ``Authorization`` header as a JWT
before the request reaches us, so the secret is also accepted from a
query parameter or a custom header.

Extraction order (first non-empty wins, later locations are ignored):

1. query parameter ``secret``
2. header ``X-Signature`` (or ``X-RevenueCat-Signature``)
3. ``Authorization`` header, only when it is not JWT-shaped
"""

import logging
from typing import Callable, Optional

from fastapi import Request

from app.config import settings
from app.core.errors import AuthenticationError, ConfigurationError, ErrorCodes
from app.core.security import looks_like_jwt, secrets_match, strip_bearer

logger = logging.getLogger(__name__)

SECRET_QUERY_PARAM = "secret"
SECRET_HEADERS = ("X-Signature", "X-RevenueCat-Signature")

AUTH_HINT = (
    "Provide the webhook secret as ?secret={webhook_secret}, in the "
    "X-Signature header, or as a non-JWT Authorization header"
)

SecretExtractor = Callable[[Request], Optional[str]]


def secret_from_query(request: Request) -> Optional[str]:
    value = request.query_params.get(SECRET_QUERY_PARAM)
    if not value or not value.strip():
        return None
    return value.strip()


def secret_from_signature_header(request: Request) -> Optional[str]:
    for header in SECRET_HEADERS:
        value = request.headers.get(header)
        if value and value.strip():
            return value.strip()
    return None


def secret_from_authorization(request: Request) -> Optional[str]:
    # A JWT here belongs to the platform's own gateway check, not to us.
    token = strip_bearer(request.headers.get("Authorization"))
    if token is None or looks_like_jwt(token):
        return None
    return token


SECRET_EXTRACTORS: tuple[tuple[str, SecretExtractor], ...] = (
    ("query", secret_from_query),
    ("signature_header", secret_from_signature_header),
    ("authorization", secret_from_authorization),
)


def extract_webhook_secret(request: Request) -> tuple[Optional[str], Optional[str]]:
    """
    Run the extractors in priority order.

    Returns:
        ``(token, source)`` for the first extractor that yields a value,
        or ``(None, None)`` when no location carries one.
    """
    for source, extractor in SECRET_EXTRACTORS:
        token = extractor(request)
        if token:
            return token, source
    return None, None


def verify_webhook_request(request: Request) -> str:
    """
    Authenticate an inbound webhook request.

    Returns:
        The name of the location the secret was read from.

    Raises:
        ConfigurationError: REVENUECAT_WEBHOOK_SECRET is not set.
        AuthenticationError: secret missing or wrong.
    """
    expected = settings.REVENUECAT_WEBHOOK_SECRET
    if not expected:
        logger.error("REVENUECAT_WEBHOOK_SECRET not configured")
        raise ConfigurationError(message="Webhook secret not configured")

    token, source = extract_webhook_secret(request)

    if not secrets_match(token, expected):
        logger.warning(
            "Webhook auth failed: source=%s has_query=%s has_signature_header=%s "
            "has_authorization=%s",
            source,
            SECRET_QUERY_PARAM in request.query_params,
            any(h in request.headers for h in SECRET_HEADERS),
            "authorization" in request.headers,
        )
        raise AuthenticationError(
            code=ErrorCodes.AUTH_INVALID_WEBHOOK_SECRET,
            message="Invalid webhook authentication token",
            hint=AUTH_HINT,
        )

    logger.debug("Webhook authenticated via %s", source)
    return source
