"""
Sync API Endpoints
==================

Reconciliation sync against the RevenueCat REST API.

- ``GET  /revenuecat?user_id=&rc_app_user_id=`` sync one subscriber
- ``POST /revenuecat {user_id?, rc_app_user_id?}`` sync one subscriber
- ``POST /revenuecat {sync_all: true}`` bulk sync (operator only)

End users may only sync themselves.  A user syncing an anonymous
subscriber id links that subscriber to their own account.
"""

import logging
from typing import Optional
import uuid

from fastapi import APIRouter, Query, status
from fastapi.responses import JSONResponse

from app.core.errors import ErrorCodes, ForbiddenError, ValidationError
from app.dependencies import CallerDep, DBSession, RevenueCatDep, StoreDep, SyncCaller
from app.schemas.subscription import SyncRequest
from app.services.identity import IdentityResolver
from app.services.reconciliation import ERROR_MISSING_IDENTIFIER, ReconciliationService
from app.services.revenuecat import RevenueCatClient
from app.services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)

router = APIRouter()


async def authorize_target(
    caller: SyncCaller,
    store: SubscriptionStore,
    user_id: Optional[uuid.UUID],
    subscriber_id: Optional[str],
) -> Optional[uuid.UUID]:
    """
    Check the caller may act on the requested user / subscriber.

    Returns:
        The user id to act on (a user caller's own id when omitted).

    Raises:
        ForbiddenError: a user caller targets another user's data.
        ValidationError: neither identifier was given.
    """
    if not caller.is_operator:
        if user_id is not None and not caller.can_act_for(user_id):
            raise ForbiddenError(message="Cannot access another user's subscription")

        if subscriber_id:
            owner = await IdentityResolver(store).try_resolve(subscriber_id)
            if owner is not None and not caller.can_act_for(owner):
                logger.warning(
                    "User %s attempted to access subscriber=%s owned by %s",
                    caller.user_id,
                    subscriber_id,
                    owner,
                )
                raise ForbiddenError(message="Cannot access another user's subscription")

        user_id = caller.user_id

    if user_id is None and not subscriber_id:
        raise ValidationError(
            message=ERROR_MISSING_IDENTIFIER,
            code=ErrorCodes.SYNC_MISSING_IDENTIFIER,
        )
    return user_id


async def _sync_single(
    caller: SyncCaller,
    db: DBSession,
    store: SubscriptionStore,
    client: RevenueCatClient,
    user_id: Optional[uuid.UUID],
    subscriber_id: Optional[str],
):
    user_id = await authorize_target(caller, store, user_id, subscriber_id)

    result = await ReconciliationService(store, client).sync_subscriber(
        user_id=user_id,
        subscriber_id=subscriber_id,
    )
    await db.commit()

    content = result.model_dump(exclude_none=True)
    if not result.success:
        logger.warning(
            "Sync failed: user=%s subscriber=%s error=%s",
            user_id,
            subscriber_id,
            result.error,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=content,
        )
    return content


@router.get("/revenuecat")
async def sync_revenuecat_get(
    caller: CallerDep,
    db: DBSession,
    store: StoreDep,
    client: RevenueCatDep,
    user_id: Optional[uuid.UUID] = Query(default=None),
    rc_app_user_id: Optional[str] = Query(default=None, min_length=1),
):
    """Sync one subscriber from RevenueCat."""
    return await _sync_single(caller, db, store, client, user_id, rc_app_user_id)


@router.post("/revenuecat")
async def sync_revenuecat_post(
    request: SyncRequest,
    caller: CallerDep,
    db: DBSession,
    store: StoreDep,
    client: RevenueCatDep,
):
    """
    Sync one subscriber, or every active record with ``sync_all``.

    Bulk sync is capped at ``SYNC_BATCH_SIZE`` records per call, stalest
    first; schedule it repeatedly to cover larger user bases.
    """
    if request.sync_all:
        if not caller.is_operator:
            raise ForbiddenError(message="Operator credentials required for sync_all")

        response = await ReconciliationService(store, client).sync_all()
        await db.commit()
        return response.model_dump(exclude_none=True)

    return await _sync_single(
        caller,
        db,
        store,
        client,
        request.user_id,
        request.rc_app_user_id,
    )
