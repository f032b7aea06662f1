"""
Reconciliation Sync
===================

Pull-based correction of the local record from RevenueCat's subscriber
snapshot.  Used when push events were missed, arrived out of order, or
could not be mapped to a user at delivery time.

Single-subscriber failures are returned as ``SyncResult(success=False)``
rather than raised, so a bulk run continues past them.
"""

import logging
from datetime import datetime
from typing import Any, Optional
import uuid

from app.config import settings
from app.core.errors import PersistenceConflict, UpstreamFetchFailure
from app.models.subscription import Environment
from app.schemas.subscription import BulkSyncResponse, SyncResult
from app.services.event_classifier import normalize_store
from app.services.identity import IdentityResolver
from app.services.revenuecat import ActiveEntitlement, RevenueCatClient, select_entitlement
from app.services.subscription_store import RecordValues, SubscriptionStore
from app.services.trial_detection import match_snapshot_trial_rule
from app.utils.helpers import parse_date, utc_now

logger = logging.getLogger(__name__)

SYNC_EVENT_TYPE = "SYNC"

ERROR_MISSING_IDENTIFIER = "user_id or rc_app_user_id is required"
ERROR_NO_RECORD = "No subscription record found for user"
ERROR_USER_NOT_FOUND = "User not found in database"
ERROR_FETCH_FAILED = "Failed to fetch from RevenueCat API"
ERROR_OTHER_USER = "Subscription already linked to another account"


def snapshot_to_record_values(
    *,
    user_id: uuid.UUID,
    subscriber_id: str,
    subscriber: dict[str, Any],
    chosen: ActiveEntitlement,
    now: Optional[datetime] = None,
) -> RecordValues:
    """Derive the record from a RevenueCat subscriber snapshot."""
    now = now or utc_now()
    entitlement = chosen.entitlement
    subscription = chosen.subscription

    expires_at = parse_date(entitlement.get("expires_date"))
    is_active = expires_at is not None and expires_at > now
    is_trial = match_snapshot_trial_rule(entitlement, subscription) is not None

    will_renew = subscription.get("will_renew")
    if will_renew is None:
        will_renew = subscription.get("unsubscribe_detected_at") is None

    sandbox = bool(entitlement.get("is_sandbox") or subscription.get("is_sandbox"))

    return RecordValues(
        user_id=user_id,
        billing_subscriber_id=subscriber_id,
        billing_original_subscriber_id=subscriber.get("original_app_user_id"),
        entitlement=chosen.name,
        product_id=chosen.product_id,
        store=normalize_store(subscription.get("store") or entitlement.get("store")),
        environment=Environment.SANDBOX if sandbox else Environment.PRODUCTION,
        is_active=is_active,
        is_trial=is_trial,
        will_renew=will_renew,
        current_period_end=expires_at or now,
        original_purchase_at=parse_date(
            subscription.get("original_purchase_date") or subscription.get("purchase_date")
        ),
        last_event_type=SYNC_EVENT_TYPE,
        raw_event_snapshot={"subscriber": subscriber},
    )


class ReconciliationService:
    """Sync local subscription records against RevenueCat."""

    def __init__(self, store: SubscriptionStore, client: RevenueCatClient):
        self.store = store
        self.client = client
        self.resolver = IdentityResolver(store)

    async def sync_subscriber(
        self,
        user_id: Optional[uuid.UUID] = None,
        subscriber_id: Optional[str] = None,
    ) -> SyncResult:
        """
        Re-derive and persist one subscriber's record from RevenueCat.

        With only ``user_id``, the subscriber id is taken from the user's
        newest record.  With only ``subscriber_id``, the user comes from
        the identity resolver.
        """
        if user_id is None and not subscriber_id:
            return SyncResult(success=False, error=ERROR_MISSING_IDENTIFIER)

        if not subscriber_id:
            record = await self.store.latest_for_user(user_id)
            if record is None:
                return SyncResult(success=False, error=ERROR_NO_RECORD, user_id=str(user_id))
            subscriber_id = record.billing_subscriber_id

        if user_id is None:
            user_id = await self.resolver.try_resolve(subscriber_id)
            if user_id is None:
                return SyncResult(success=False, error=ERROR_USER_NOT_FOUND)

        try:
            subscriber = await self.client.get_subscriber(subscriber_id)
        except UpstreamFetchFailure as exc:
            logger.error(
                "Sync fetch failed: subscriber=%s user=%s reason=%s",
                subscriber_id,
                user_id,
                exc.reason,
            )
            return SyncResult(success=False, error=ERROR_FETCH_FAILED, user_id=str(user_id))

        chosen = select_entitlement(subscriber)
        if chosen is None:
            await self.store.deactivate_active_for_user(user_id)
            logger.info(
                "Sync: no entitlement for subscriber=%s user=%s; deactivated",
                subscriber_id,
                user_id,
            )
            return SyncResult(success=True, synced=True, user_id=str(user_id))

        values = snapshot_to_record_values(
            user_id=user_id,
            subscriber_id=subscriber_id,
            subscriber=subscriber,
            chosen=chosen,
        )

        try:
            await self.store.upsert(values)
        except PersistenceConflict as exc:
            error = ERROR_USER_NOT_FOUND
            if exc.kind == PersistenceConflict.OTHER_USER:
                error = ERROR_OTHER_USER
            logger.error("Sync conflict: %s", exc)
            return SyncResult(success=False, error=error, user_id=str(user_id))

        if values.is_active:
            await self.store.deactivate_other_active(user_id, subscriber_id)

        logger.info(
            "Synced subscriber=%s user=%s entitlement=%s active=%s trial=%s "
            "will_renew=%s env=%s",
            subscriber_id,
            user_id,
            values.entitlement,
            values.is_active,
            values.is_trial,
            values.will_renew,
            values.environment.value,
        )
        return SyncResult(success=True, synced=True, user_id=str(user_id))

    async def sync_all(self, limit: Optional[int] = None) -> BulkSyncResponse:
        """
        Sync active records, stalest first, up to ``SYNC_BATCH_SIZE``.

        Runs sequentially and commits after every subscriber, so an
        interrupted run keeps its progress and the next run starts from
        the records it did not reach.  A failing subscriber is rolled back
        and reported; the batch continues.
        """
        records = await self.store.list_active(limit or settings.SYNC_BATCH_SIZE)
        targets = [(r.user_id, r.billing_subscriber_id) for r in records]

        results: list[SyncResult] = []
        for user_id, subscriber_id in targets:
            try:
                result = await self.sync_subscriber(user_id=user_id, subscriber_id=subscriber_id)
                await self.store.commit()
            except Exception as exc:
                logger.exception("Bulk sync failed for subscriber=%s", subscriber_id)
                await self.store.rollback()
                result = SyncResult(success=False, error=str(exc), user_id=str(user_id))
            results.append(result)

        synced_count = sum(1 for r in results if r.success and r.synced)
        logger.info("Bulk sync finished: synced=%d total=%d", synced_count, len(results))
        return BulkSyncResponse(
            success=True,
            synced_count=synced_count,
            total=len(results),
            results=results,
        )
