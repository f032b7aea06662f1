"""
User Model
==========

Minimal mapping of the identity provider's user table.

Accounts are created and owned by Supabase Auth; this service only needs
the primary key as the foreign-key target for subscription rows.
"""

from typing import TYPE_CHECKING, Optional
import uuid

from sqlalchemy import String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db.base import Base, TimestampMixin

if TYPE_CHECKING:
    from app.models.subscription import SubscriptionRecord


class User(Base, TimestampMixin):
    """User account model."""

    __tablename__ = "users"

    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    email: Mapped[Optional[str]] = mapped_column(
        String(255),
        unique=True,
        nullable=True,
    )

    subscriptions: Mapped[list["SubscriptionRecord"]] = relationship(
        "SubscriptionRecord",
        back_populates="user",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<User(user_id={self.user_id}, email={self.email})>"
