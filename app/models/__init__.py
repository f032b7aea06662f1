"""
Database Models
===============

SQLAlchemy ORM models.

All models are imported here to ensure they are registered
with SQLAlchemy's metadata and relationships resolve.
"""

from app.models.user import User
from app.models.subscription import (
    Environment,
    SkippedBillingEvent,
    SkipReason,
    Store,
    SubscriptionRecord,
)

__all__ = [
    # User
    "User",
    # Subscription
    "SubscriptionRecord",
    "SkippedBillingEvent",
    "SkipReason",
    "Store",
    "Environment",
]
