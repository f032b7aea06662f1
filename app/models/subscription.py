"""
Subscription Models
===================

SQLAlchemy models for the locally mirrored RevenueCat subscription state.

``SubscriptionRecord`` is upserted in place, keyed on the RevenueCat
``app_user_id`` (``billing_subscriber_id``).  Rows are never deleted;
deactivation flips ``is_active`` and the raw payload is kept for audit.
"""

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Optional
import uuid

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base, TimestampMixin

if TYPE_CHECKING:
    from app.models.user import User


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class Store(str, Enum):
    """Store the purchase was made through."""
    APP_STORE = "app_store"
    PLAY_STORE = "play_store"
    STRIPE = "stripe"


class Environment(str, Enum):
    """RevenueCat environment the purchase belongs to."""
    PRODUCTION = "PRODUCTION"
    SANDBOX = "SANDBOX"


class SkipReason(str, Enum):
    """Why an accepted webhook event was not applied."""
    UNRESOLVED_IDENTITY = "unresolved_identity"
    UNKNOWN_USER = "unknown_user"
    LINKED_TO_OTHER_USER = "linked_to_other_user"


class SubscriptionRecord(Base, TimestampMixin):
    """
    One user's subscription as last reported by RevenueCat.

    ``is_active``, ``is_trial`` and ``will_renew`` are NOT NULL: access
    control downstream treats a missing flag as an error.
    """

    __tablename__ = "user_subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.user_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # RevenueCat identity
    billing_subscriber_id: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
    )
    billing_original_subscriber_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )

    # Purchase details
    entitlement: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        default="pro",
    )
    product_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        default="unknown",
    )
    store: Mapped[Store] = mapped_column(
        SQLEnum(Store, name="subscription_store", values_callable=_enum_values),
        nullable=False,
        default=Store.APP_STORE,
    )
    environment: Mapped[Environment] = mapped_column(
        SQLEnum(Environment, name="subscription_environment", values_callable=_enum_values),
        nullable=False,
        default=Environment.PRODUCTION,
    )

    # Derived status flags
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_trial: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    will_renew: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    current_period_end: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    original_purchase_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Audit
    raw_event_snapshot: Mapped[Optional[dict]] = mapped_column(
        JSONB,
        nullable=True,
    )
    last_event_type: Mapped[Optional[str]] = mapped_column(
        String(50),
        nullable=True,
    )

    user: Mapped["User"] = relationship(
        "User",
        back_populates="subscriptions",
    )

    __table_args__ = (
        Index("idx_user_subscriptions_user_active", "user_id", "is_active"),
        Index("idx_user_subscriptions_active_updated", "is_active", "updated_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<SubscriptionRecord(user_id={self.user_id}, "
            f"subscriber={self.billing_subscriber_id}, active={self.is_active}, "
            f"trial={self.is_trial})>"
        )


class SkippedBillingEvent(Base):
    """
    Webhook event that was acknowledged but not applied.

    Swept by the lifecycle job once the subscriber becomes resolvable.
    """

    __tablename__ = "skipped_billing_events"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    billing_subscriber_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
    )
    event_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )
    event_type: Mapped[Optional[str]] = mapped_column(
        String(50),
        nullable=True,
    )
    reason: Mapped[SkipReason] = mapped_column(
        SQLEnum(SkipReason, name="skipped_event_reason", values_callable=_enum_values),
        nullable=False,
    )
    payload: Mapped[Optional[dict]] = mapped_column(
        JSONB,
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    resolved_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    # Sweep bookkeeping: least recently attempted subscribers go first.
    attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default="0",
    )
    last_attempted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    __table_args__ = (
        Index("idx_skipped_events_unresolved", "resolved_at", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<SkippedBillingEvent(subscriber={self.billing_subscriber_id}, "
            f"reason={self.reason})>"
        )
