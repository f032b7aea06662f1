"""
Cron API Endpoints
==================

Operator-triggered maintenance jobs.  Every route requires
``Authorization: Bearer <CRON_SECRET>``.
"""

import logging

from fastapi import APIRouter

from app.dependencies import DBSession, OperatorDep, RevenueCatDep, StoreDep
from app.services.scheduled_jobs import run_revenuecat_sync, run_subscription_lifecycle

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/subscription-lifecycle")
async def subscription_lifecycle(
    _: OperatorDep,
    db: DBSession,
    store: StoreDep,
    client: RevenueCatDep,
) -> dict:
    """
    Deactivate lapsed records, then retry skipped webhook events whose
    subscriber has since become resolvable.
    """
    jobs = await run_subscription_lifecycle(store, client)
    await db.commit()
    logger.info("Subscription lifecycle jobs finished: %s", [job["job"] for job in jobs])
    return {"success": True, "jobs": jobs}


@router.post("/revenuecat-sync")
async def revenuecat_sync(
    _: OperatorDep,
    db: DBSession,
    store: StoreDep,
    client: RevenueCatDep,
) -> dict:
    """Bulk sync of active records against RevenueCat (one batch)."""
    job = await run_revenuecat_sync(store, client)
    await db.commit()
    return {"success": True, "jobs": [job]}
