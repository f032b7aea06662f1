"""
Webhook Processor
=================

Applies one authenticated RevenueCat webhook event:

    classify -> resolve identity -> decide flags -> (trial conversion)
    -> upsert -> (deactivate other active records)

Anything a later reconciliation sync can repair is returned as a
"skipped" outcome and written to the skipped-event ledger, so RevenueCat
gets a 2xx and does not retry.  Unexpected datastore errors propagate.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from app.core.errors import IdentityResolutionFailure, PersistenceConflict
from app.models.subscription import SkipReason
from app.schemas.subscription import BillingWebhookEvent
from app.services.event_classifier import TransitionIntent, classify_event
from app.services.identity import IdentityResolver
from app.services.subscription_store import RecordValues, SubscriptionStore
from app.services.transitions import decide_transition

logger = logging.getLogger(__name__)

MESSAGE_UNRESOLVED = "User not found - will be processed when user logs in and syncs"
MESSAGE_UNKNOWN_USER = "User not found - will be processed when user logs in"
MESSAGE_OTHER_USER = "Subscription already linked to another account"
MESSAGE_NO_SUBSCRIBER = "Event has no app_user_id"


@dataclass
class WebhookOutcome:
    """Result of processing one event."""

    skipped: bool = False
    message: Optional[str] = None
    reason: Optional[SkipReason] = None

    @classmethod
    def processed(cls) -> "WebhookOutcome":
        return cls()

    @classmethod
    def skip(cls, message: str, reason: Optional[SkipReason] = None) -> "WebhookOutcome":
        return cls(skipped=True, message=message, reason=reason)


class WebhookProcessor:
    """Apply RevenueCat webhook events to the subscription store."""

    def __init__(self, store: SubscriptionStore):
        self.store = store
        self.resolver = IdentityResolver(store)

    async def process(
        self,
        event: BillingWebhookEvent,
        body: Optional[dict[str, Any]] = None,
    ) -> WebhookOutcome:
        intent = classify_event(event, body)

        if not intent.subscriber_id:
            logger.warning("Skipping event without subscriber: type=%s id=%s", intent.raw_type, intent.event_id)
            return WebhookOutcome.skip(MESSAGE_NO_SUBSCRIBER)

        try:
            user_id = await self.resolver.resolve(intent.subscriber_id)
        except IdentityResolutionFailure:
            return await self._skip(intent, SkipReason.UNRESOLVED_IDENTITY, MESSAGE_UNRESOLVED)

        current = None
        if not intent.is_known_type:
            current = await self.store.get_flags(intent.subscriber_id)
        flags = decide_transition(intent.event_type, current)

        if intent.converts_trial:
            await self.store.deactivate_active_trials(user_id)

        values = RecordValues(
            user_id=user_id,
            billing_subscriber_id=intent.subscriber_id,
            billing_original_subscriber_id=intent.original_subscriber_id,
            entitlement=intent.entitlement,
            product_id=intent.product_id,
            store=intent.store,
            environment=intent.environment,
            is_active=flags.is_active,
            is_trial=intent.is_trial,
            will_renew=flags.will_renew,
            current_period_end=intent.current_period_end,
            original_purchase_at=intent.purchased_at,
            last_event_type=intent.raw_type,
            raw_event_snapshot=intent.raw_event,
        )

        try:
            await self.store.upsert(values)
        except PersistenceConflict as exc:
            if exc.kind == PersistenceConflict.FOREIGN_KEY:
                logger.warning(
                    "Subscriber=%s resolved to unknown user=%s; skipping",
                    intent.subscriber_id,
                    user_id,
                )
                return await self._skip(intent, SkipReason.UNKNOWN_USER, MESSAGE_UNKNOWN_USER)
            logger.error(
                "Subscriber=%s is linked to a different user than %s; skipping",
                intent.subscriber_id,
                user_id,
            )
            return await self._skip(intent, SkipReason.LINKED_TO_OTHER_USER, MESSAGE_OTHER_USER)

        if flags.is_active:
            await self.store.deactivate_other_active(user_id, intent.subscriber_id)

        logger.info(
            "Processed event: type=%s subscriber=%s user=%s active=%s trial=%s "
            "will_renew=%s env=%s",
            intent.raw_type,
            intent.subscriber_id,
            user_id,
            flags.is_active,
            intent.is_trial,
            flags.will_renew,
            intent.environment.value,
        )
        return WebhookOutcome.processed()

    async def _skip(
        self,
        intent: TransitionIntent,
        reason: SkipReason,
        message: str,
    ) -> WebhookOutcome:
        await self.store.record_skipped_event(
            intent.subscriber_id,
            reason,
            event_id=intent.event_id,
            event_type=intent.raw_type,
            payload=intent.raw_event,
        )
        logger.info(
            "Skipped event: type=%s subscriber=%s reason=%s",
            intent.raw_type,
            intent.subscriber_id,
            reason.value,
        )
        return WebhookOutcome.skip(message, reason)
