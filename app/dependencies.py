"""
Common Dependencies
===================

Shared dependencies used across the application.

Sync, status and cron endpoints accept two kinds of caller:
- the operator (schedulers, admin tools): ``Authorization: Bearer <CRON_SECRET>``
- an end user: a Supabase-issued JWT from ``?user_token=``, the
  ``X-User-Token`` header, or ``Authorization: Bearer``
"""

import logging
from dataclasses import dataclass
from typing import Annotated, Optional
import uuid

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.errors import (
    AuthenticationError,
    ConfigurationError,
    ErrorCodes,
    ForbiddenError,
)
from app.core.security import decode_token, secrets_match, strip_bearer
from app.db.session import get_db
from app.services.revenuecat import RevenueCatClient
from app.services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)

# Database session dependency
DBSession = Annotated[AsyncSession, Depends(get_db)]

USER_TOKEN_QUERY_PARAM = "user_token"
USER_TOKEN_HEADER = "X-User-Token"

CALLER_AUTH_HINT = (
    "Use Authorization: Bearer <CRON_SECRET>, or a user token via "
    "?user_token=, X-User-Token, or Authorization: Bearer"
)


@dataclass
class SyncCaller:
    """Who is calling a sync / status endpoint."""

    is_operator: bool = False
    user_id: Optional[uuid.UUID] = None

    def can_act_for(self, user_id: Optional[uuid.UUID]) -> bool:
        """Operators act for anyone; users only for themselves."""
        if self.is_operator:
            return True
        return user_id is not None and user_id == self.user_id


# =============================================================================
# Services
# =============================================================================

async def get_subscription_store(db: DBSession) -> SubscriptionStore:
    return SubscriptionStore(db)


async def get_revenuecat_client() -> RevenueCatClient:
    """RevenueCat REST client; fails with 500 when no API key is configured."""
    if not settings.REVENUECAT_API_KEY:
        logger.error("REVENUECAT_API_KEY not configured")
        raise ConfigurationError(message="RevenueCat API key not configured")
    return RevenueCatClient()


StoreDep = Annotated[SubscriptionStore, Depends(get_subscription_store)]
RevenueCatDep = Annotated[RevenueCatClient, Depends(get_revenuecat_client)]


# =============================================================================
# Caller authentication
# =============================================================================

def _user_id_from_token(token: str) -> Optional[uuid.UUID]:
    payload = decode_token(token)
    if payload is None:
        return None

    subject = payload.get("sub")
    if not subject:
        return None

    try:
        return uuid.UUID(str(subject))
    except ValueError:
        return None


async def get_sync_caller(request: Request) -> SyncCaller:
    """
    Authenticate a sync caller as operator or end user.

    Raises 401 when no credential is present or the user token is invalid.
    """
    bearer = strip_bearer(request.headers.get("Authorization"))

    if settings.CRON_SECRET and secrets_match(bearer, settings.CRON_SECRET):
        return SyncCaller(is_operator=True)

    token = (
        request.query_params.get(USER_TOKEN_QUERY_PARAM)
        or request.headers.get(USER_TOKEN_HEADER)
        or bearer
    )
    if not token:
        raise AuthenticationError(
            code=ErrorCodes.AUTH_TOKEN_MISSING,
            message="Not authenticated",
            hint=CALLER_AUTH_HINT,
        )

    user_id = _user_id_from_token(token.strip())
    if user_id is None:
        logger.warning("Rejected sync caller: invalid user token")
        raise AuthenticationError(
            code=ErrorCodes.AUTH_INVALID_TOKEN,
            message="Invalid or expired token",
            hint=CALLER_AUTH_HINT,
        )

    # Picked up by the New Relic middleware as enduser.id
    request.state.user_id = user_id
    return SyncCaller(user_id=user_id)


async def require_operator(
    caller: Annotated[SyncCaller, Depends(get_sync_caller)],
) -> SyncCaller:
    """Only the operator secret may run bulk and cron jobs."""
    if not caller.is_operator:
        raise ForbiddenError(message="Operator credentials required")
    return caller


CallerDep = Annotated[SyncCaller, Depends(get_sync_caller)]
OperatorDep = Annotated[SyncCaller, Depends(require_operator)]
