"""
Scheduled Jobs
==============

Maintenance tasks triggered by the operator cron endpoint:
- Subscription expiration check
- Skipped webhook event sweep
- RevenueCat bulk sync
"""

import logging
from typing import Optional

from app.config import settings
from app.services.identity import IdentityResolver
from app.services.reconciliation import ReconciliationService
from app.services.revenuecat import RevenueCatClient
from app.services.subscription_store import SubscriptionStore
from app.utils.helpers import utc_now

logger = logging.getLogger(__name__)


class ScheduledJobService:
    """Service for scheduled background jobs."""

    def __init__(self, store: SubscriptionStore, client: RevenueCatClient):
        self.store = store
        self.reconciliation = ReconciliationService(store, client)
        self.resolver = IdentityResolver(store)

    async def check_expired_subscriptions(self) -> dict:
        """
        Deactivate records still marked active after their period ended
        without renewal (the EXPIRATION webhook never arrived).

        Returns:
            Summary of processed records
        """
        now = utc_now()
        processed = await self.store.deactivate_expired(now)
        await self.store.commit()
        logger.info("Expiration check deactivated %d record(s)", processed)

        return {
            "job": "check_expired_subscriptions",
            "processed": processed,
            "run_at": now.isoformat(),
        }

    async def sweep_skipped_events(self, limit: Optional[int] = None) -> dict:
        """
        Retry skipped webhook events whose subscriber is now resolvable.

        Each resolvable subscriber gets a reconciliation sync; on success
        its skipped events are marked resolved.  Every other attempt is
        stamped on the events, so the next run starts with subscribers
        that were not tried recently.  Each subscriber is committed on
        its own.

        Returns:
            Summary of the sweep
        """
        now = utc_now()
        subscriber_ids = await self.store.list_unresolved_subscribers(
            limit or settings.SYNC_BATCH_SIZE
        )

        resolved = 0
        pending = 0
        errors = []

        for subscriber_id in subscriber_ids:
            try:
                user_id = await self.resolver.try_resolve(subscriber_id)
                if user_id is None:
                    pending += 1
                    await self.store.mark_skipped_attempted(subscriber_id, now)
                    await self.store.commit()
                    continue

                result = await self.reconciliation.sync_subscriber(
                    user_id=user_id,
                    subscriber_id=subscriber_id,
                )
                if result.success:
                    await self.store.mark_skipped_resolved(subscriber_id, now)
                    resolved += 1
                else:
                    await self.store.mark_skipped_attempted(subscriber_id, now)
                    errors.append({
                        "subscriber_id": subscriber_id,
                        "error": result.error,
                    })
                await self.store.commit()
            except Exception as exc:
                logger.exception("Skipped-event sweep failed for subscriber=%s", subscriber_id)
                await self.store.rollback()
                await self.store.mark_skipped_attempted(subscriber_id, now)
                await self.store.commit()
                errors.append({
                    "subscriber_id": subscriber_id,
                    "error": str(exc),
                })

        logger.info(
            "Skipped-event sweep: resolved=%d pending=%d errors=%d",
            resolved,
            pending,
            len(errors),
        )
        return {
            "job": "sweep_skipped_events",
            "checked": len(subscriber_ids),
            "resolved": resolved,
            "pending": pending,
            "errors": errors,
            "run_at": now.isoformat(),
        }

    async def sync_revenuecat_subscriptions(self) -> dict:
        """
        Sync active records with RevenueCat, stalest first.

        Returns:
            Summary of synced subscriptions
        """
        now = utc_now()
        response = await self.reconciliation.sync_all()
        return {
            "job": "sync_revenuecat_subscriptions",
            "synced": response.synced_count,
            "total": response.total,
            "errors": [
                {"user_id": r.user_id, "error": r.error}
                for r in response.results
                if not r.success
            ],
            "run_at": now.isoformat(),
        }


async def run_subscription_lifecycle(
    store: SubscriptionStore,
    client: RevenueCatClient,
) -> list[dict]:
    """Run the expiration check followed by the skipped-event sweep."""
    service = ScheduledJobService(store, client)
    return [
        await service.check_expired_subscriptions(),
        await service.sweep_skipped_events(),
    ]


async def run_revenuecat_sync(
    store: SubscriptionStore,
    client: RevenueCatClient,
) -> dict:
    """Run RevenueCat bulk sync."""
    service = ScheduledJobService(store, client)
    return await service.sync_revenuecat_subscriptions()
