"""
Trial / Expiration Heuristic
============================

RevenueCat does not always flag a free trial explicitly, and trial
events sometimes report ``expiration_at_ms`` for the full paid period.
Trial status is therefore derived from an ordered list of rules (first
match wins) and a trial's period end is recomputed from the offer period.

Two rule lists exist: one for webhook events and one for the REST
subscriber snapshot used by reconciliation.
"""

import logging
import math
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping, Optional

from app.schemas.subscription import BillingWebhookEvent
from app.utils.helpers import parse_date, utc_now

logger = logging.getLogger(__name__)

FREE_TRIAL_DISCOUNT = "FREE_TRIAL"
THREE_DAY_OFFER = "P3D"

# ISO-8601 offer period -> trial length
OFFER_PERIOD_DAYS: dict[str, int] = {
    "P3D": 3,
    "P7D": 7,
}
DEFAULT_TRIAL_DAYS = 3

# Snapshot periods this short are treated as trials.
SNAPSHOT_TRIAL_MAX_DAYS = 7


# =============================================================================
# Webhook event rules
# =============================================================================

def rule_explicit_trial_flag(event: BillingWebhookEvent) -> bool:
    if event.is_trial_period:
        return True
    return (event.period_type or "").upper() == "TRIAL"


def rule_free_trial_discount(event: BillingWebhookEvent) -> bool:
    return (event.offer_discount_type or "").upper() == FREE_TRIAL_DISCOUNT


def rule_three_day_offer(event: BillingWebhookEvent) -> bool:
    return (event.offer_period or "").upper() == THREE_DAY_OFFER


def rule_zero_price(event: BillingWebhookEvent) -> bool:
    # A missing price is not a zero price.
    return event.price is not None and event.price == 0


EventTrialRule = Callable[[BillingWebhookEvent], bool]

EVENT_TRIAL_RULES: tuple[tuple[str, EventTrialRule], ...] = (
    ("explicit_flag", rule_explicit_trial_flag),
    ("free_trial_discount", rule_free_trial_discount),
    ("three_day_offer", rule_three_day_offer),
    ("zero_price", rule_zero_price),
)


def match_event_trial_rule(event: BillingWebhookEvent) -> Optional[str]:
    """Return the name of the first trial rule the event satisfies, if any."""
    for name, rule in EVENT_TRIAL_RULES:
        if rule(event):
            return name
    return None


def is_trial_event(event: BillingWebhookEvent) -> bool:
    """Whether a webhook event describes a trial period.  Always a bool."""
    return match_event_trial_rule(event) is not None


def trial_length(offer_period: Optional[str]) -> timedelta:
    """Trial duration for an offer period code, defaulting to 3 days."""
    days = OFFER_PERIOD_DAYS.get((offer_period or "").upper(), DEFAULT_TRIAL_DAYS)
    return timedelta(days=days)


def compute_period_end(
    *,
    is_trial: bool,
    purchased_at: Optional[datetime],
    expiration_at: Optional[datetime],
    offer_period: Optional[str],
    now: Optional[datetime] = None,
) -> datetime:
    """
    Derive ``current_period_end``.

    Trials end at ``purchased_at + trial_length(offer_period)``; the reported
    expiration is ignored for them.  Paid periods use the reported
    expiration.  Never returns None.
    """
    if is_trial and purchased_at is not None:
        return purchased_at + trial_length(offer_period)
    if expiration_at is not None:
        return expiration_at
    return now or utc_now()


# =============================================================================
# REST snapshot rules
# =============================================================================

def rule_snapshot_period_type(
    entitlement: Mapping[str, Any],
    subscription: Mapping[str, Any],
) -> bool:
    period_type = entitlement.get("period_type") or subscription.get("period_type") or ""
    return period_type.lower() == "trial"


def rule_snapshot_short_period(
    entitlement: Mapping[str, Any],
    subscription: Mapping[str, Any],
) -> bool:
    expires_at = parse_date(entitlement.get("expires_date"))
    purchased_at = parse_date(subscription.get("purchase_date"))
    if expires_at is None or purchased_at is None:
        return False
    days = math.ceil((expires_at - purchased_at).total_seconds() / 86400)
    return days <= SNAPSHOT_TRIAL_MAX_DAYS


SnapshotTrialRule = Callable[[Mapping[str, Any], Mapping[str, Any]], bool]

SNAPSHOT_TRIAL_RULES: tuple[tuple[str, SnapshotTrialRule], ...] = (
    ("period_type", rule_snapshot_period_type),
    ("short_period", rule_snapshot_short_period),
)


def match_snapshot_trial_rule(
    entitlement: Mapping[str, Any],
    subscription: Mapping[str, Any],
) -> Optional[str]:
    """Return the name of the first snapshot trial rule that matches, if any."""
    for name, rule in SNAPSHOT_TRIAL_RULES:
        if rule(entitlement, subscription):
            return name
    return None
