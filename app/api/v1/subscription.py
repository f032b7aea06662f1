"""
Subscription API Endpoints
==========================

Read-only subscription status for a user, with trial countdown and
access evaluation.  Same caller rules as the sync endpoints.
"""

import logging
from typing import Optional
import uuid

from fastapi import APIRouter, Query

from app.api.v1.sync import authorize_target
from app.core.errors import ErrorCodes, NotFoundError
from app.dependencies import CallerDep, StoreDep
from app.schemas.subscription import (
    SubscriptionSnapshot,
    SubscriptionStatusData,
    SubscriptionStatusResponse,
)
from app.services.access import get_trial_status, get_trial_warning, has_valid_access

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/status", response_model=SubscriptionStatusResponse)
async def get_subscription_status(
    caller: CallerDep,
    store: StoreDep,
    user_id: Optional[uuid.UUID] = Query(default=None),
    rc_app_user_id: Optional[str] = Query(default=None, min_length=1),
) -> SubscriptionStatusResponse:
    """
    Get the stored subscription for a user or RevenueCat subscriber.

    Returns the record, ``trial_status`` and ``has_valid_access``.
    404 when no record exists.
    """
    user_id = await authorize_target(caller, store, user_id, rc_app_user_id)

    if rc_app_user_id:
        record = await store.get_by_subscriber(rc_app_user_id)
    else:
        record = await store.latest_for_user(user_id)

    if record is None:
        raise NotFoundError(
            code=ErrorCodes.SUB_NOT_FOUND,
            message="Subscription not found",
        )

    trial_status = get_trial_status(record)
    return SubscriptionStatusResponse(
        data=SubscriptionStatusData(
            subscription=SubscriptionSnapshot.model_validate(record),
            trial_status=trial_status,
            has_valid_access=has_valid_access(record),
            warning=get_trial_warning(trial_status),
        ),
    )
