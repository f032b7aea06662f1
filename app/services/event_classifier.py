"""
Event Classifier
================

Turns a RevenueCat webhook event into a ``TransitionIntent``: the
canonical event type plus every derived field the persistence layer
needs (store, environment, entitlement, timestamps, trial status).
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from app.config import settings
from app.models.subscription import Environment, Store
from app.schemas.subscription import BillingWebhookEvent
from app.services.transitions import EventType
from app.services.trial_detection import compute_period_end, match_event_trial_rule
from app.utils.helpers import ms_to_datetime

logger = logging.getLogger(__name__)

DEFAULT_PRODUCT_ID = "unknown"

STORE_ALIASES: dict[str, Store] = {
    "app_store": Store.APP_STORE,
    "ios": Store.APP_STORE,
    "mac_app_store": Store.APP_STORE,
    "play_store": Store.PLAY_STORE,
    "android": Store.PLAY_STORE,
    "stripe": Store.STRIPE,
}


def normalize_store(value: Optional[str]) -> Store:
    """Map a RevenueCat store name onto ``Store``.  Unknown values become App Store."""
    if not value:
        return Store.APP_STORE
    return STORE_ALIASES.get(value.strip().lower(), Store.APP_STORE)


def normalize_environment(value: Optional[str]) -> Environment:
    """Uppercase-normalize the environment; anything unrecognized is production."""
    if not value:
        return Environment.PRODUCTION
    try:
        return Environment(value.strip().upper())
    except ValueError:
        return Environment.PRODUCTION


def resolve_entitlement(
    entitlement_id: Optional[str],
    entitlement_ids: Optional[list[str]],
) -> str:
    if entitlement_id:
        return entitlement_id
    if entitlement_ids:
        return entitlement_ids[0]
    return settings.DEFAULT_ENTITLEMENT


@dataclass
class TransitionIntent:
    """A webhook event reduced to what the persistence layer applies."""

    raw_type: Optional[str]
    event_type: Optional[EventType]
    event_id: Optional[str]
    subscriber_id: Optional[str]
    original_subscriber_id: Optional[str]
    product_id: str
    store: Store
    environment: Environment
    entitlement: str
    purchased_at: Optional[datetime]
    expiration_at: Optional[datetime]
    is_trial: bool
    trial_rule: Optional[str]
    current_period_end: datetime
    raw_event: dict[str, Any] = field(default_factory=dict)

    @property
    def is_known_type(self) -> bool:
        return self.event_type is not None

    @property
    def converts_trial(self) -> bool:
        """A paid INITIAL_PURCHASE replaces any trial the user had."""
        return self.event_type is EventType.INITIAL_PURCHASE and not self.is_trial


def classify_event(
    event: BillingWebhookEvent,
    body: Optional[dict[str, Any]] = None,
) -> TransitionIntent:
    """
    Classify a webhook event.

    ``body`` is the request body as received; it becomes ``raw_event``
    unchanged.  Without it the event is wrapped in the same envelope.

    Never raises for unknown event types or missing optional fields.
    """
    event_type = EventType.parse(event.type)
    if event_type is None:
        logger.warning(
            "Unrecognized RevenueCat event: type=%s subscriber=%s",
            event.type,
            event.app_user_id,
        )

    trial_rule = match_event_trial_rule(event)
    is_trial = trial_rule is not None

    purchased_at = ms_to_datetime(event.purchased_at_ms)
    expiration_at = ms_to_datetime(event.expiration_at_ms)

    subscriber_id = (event.app_user_id or "").strip() or None

    # PRODUCT_CHANGE reports the product being switched to separately.
    product_id = event.product_id or DEFAULT_PRODUCT_ID
    if event_type is EventType.PRODUCT_CHANGE and event.new_product_id:
        product_id = event.new_product_id

    intent = TransitionIntent(
        raw_type=event.type,
        event_type=event_type,
        event_id=event.id,
        subscriber_id=subscriber_id,
        original_subscriber_id=event.original_app_user_id or subscriber_id,
        product_id=product_id,
        store=normalize_store(event.store),
        environment=normalize_environment(event.environment),
        entitlement=resolve_entitlement(event.entitlement_id, event.entitlement_ids),
        purchased_at=purchased_at,
        expiration_at=expiration_at,
        is_trial=is_trial,
        trial_rule=trial_rule,
        current_period_end=compute_period_end(
            is_trial=is_trial,
            purchased_at=purchased_at,
            expiration_at=expiration_at,
            offer_period=event.offer_period,
        ),
        raw_event=body if body is not None else {"event": event.model_dump(mode="json")},
    )

    logger.info(
        "Classified event: type=%s subscriber=%s product=%s store=%s env=%s "
        "is_trial=%s trial_rule=%s period_end=%s",
        intent.raw_type,
        intent.subscriber_id,
        intent.product_id,
        intent.store.value,
        intent.environment.value,
        intent.is_trial,
        intent.trial_rule,
        intent.current_period_end.isoformat(),
    )
    return intent
