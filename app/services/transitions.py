"""
Subscription State Transitions
==============================

Pure mapping from a RevenueCat event type to the resulting
``(is_active, will_renew)`` flags.  No I/O happens here.

Every entry sets absolute values rather than toggling the current
ones, so applying the same event twice gives the same flags as
applying it once.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class EventType(str, Enum):
    """RevenueCat event types that change subscription status."""

    INITIAL_PURCHASE = "INITIAL_PURCHASE"
    RENEWAL = "RENEWAL"
    PRODUCT_CHANGE = "PRODUCT_CHANGE"
    CANCELLATION = "CANCELLATION"
    EXPIRATION = "EXPIRATION"
    BILLING_ISSUE = "BILLING_ISSUE"
    BILLING_RETRY = "BILLING_RETRY"
    SUBSCRIPTION_PAUSED = "SUBSCRIPTION_PAUSED"
    SUBSCRIPTION_RESUMED = "SUBSCRIPTION_RESUMED"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["EventType"]:
        """Return the canonical type, or None for unknown / missing values."""
        if not value:
            return None
        try:
            return cls(value.strip().upper())
        except ValueError:
            return None


@dataclass(frozen=True)
class StatusFlags:
    """The two status flags driven by event type."""

    is_active: bool
    will_renew: bool


ACTIVE_RENEWING = StatusFlags(is_active=True, will_renew=True)
ACTIVE_NOT_RENEWING = StatusFlags(is_active=True, will_renew=False)
INACTIVE = StatusFlags(is_active=False, will_renew=False)

# Flags for a record that does not exist yet and receives an unknown event.
NEW_RECORD_DEFAULT = ACTIVE_RENEWING

TRANSITION_TABLE: dict[EventType, StatusFlags] = {
    EventType.INITIAL_PURCHASE: ACTIVE_RENEWING,
    EventType.RENEWAL: ACTIVE_RENEWING,
    EventType.PRODUCT_CHANGE: ACTIVE_RENEWING,
    # Access continues until the period ends.
    EventType.CANCELLATION: ACTIVE_NOT_RENEWING,
    EventType.EXPIRATION: INACTIVE,
    # Access continues while the store retries the charge.
    EventType.BILLING_ISSUE: ACTIVE_RENEWING,
    EventType.BILLING_RETRY: ACTIVE_RENEWING,
    EventType.SUBSCRIPTION_PAUSED: INACTIVE,
    EventType.SUBSCRIPTION_RESUMED: ACTIVE_RENEWING,
}


def decide_transition(
    event_type: Optional[EventType],
    current: Optional[StatusFlags] = None,
) -> StatusFlags:
    """
    Compute the status flags after an event.

    Args:
        event_type: Canonical event type, or None when unrecognized.
        current: Flags of the stored record, if one exists.

    Returns:
        The new flags.  Unrecognized events leave ``current`` unchanged.
    """
    if event_type is not None:
        return TRANSITION_TABLE[event_type]
    if current is not None:
        return StatusFlags(
            is_active=bool(current.is_active),
            will_renew=bool(current.will_renew),
        )
    return NEW_RECORD_DEFAULT
