"""
Subscription Store
==================

Data access for ``SubscriptionRecord`` and the skipped-event ledger.

The upsert is the single atomic mutation point for a subscriber:

    INSERT ... ON CONFLICT (billing_subscriber_id) DO UPDATE
        SET ... WHERE user_subscriptions.user_id = EXCLUDED.user_id
    RETURNING id

When the existing row belongs to a different user the WHERE guard makes
the update a no-op, RETURNING yields nothing, and the conflict is raised
as ``PersistenceConflict``.  ``user_id`` and ``created_at`` are never
rewritten on conflict.
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Optional, Sequence
import uuid

from sqlalchemy import func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import PersistenceConflict
from app.models.subscription import (
    Environment,
    SkippedBillingEvent,
    SkipReason,
    Store,
    SubscriptionRecord,
)
from app.services.transitions import StatusFlags
from app.utils.helpers import utc_now

logger = logging.getLogger(__name__)

FOREIGN_KEY_VIOLATION = "23503"


@dataclass
class RecordValues:
    """Column values for one upsert, built by the webhook and sync paths."""

    user_id: uuid.UUID
    billing_subscriber_id: str
    billing_original_subscriber_id: Optional[str]
    entitlement: str
    product_id: str
    store: Store
    environment: Environment
    is_active: bool
    is_trial: bool
    will_renew: bool
    current_period_end: datetime
    original_purchase_at: Optional[datetime]
    last_event_type: Optional[str]
    raw_event_snapshot: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        # NOT NULL columns; never let a None slip through.
        self.is_active = bool(self.is_active)
        self.is_trial = bool(self.is_trial)
        self.will_renew = bool(self.will_renew)
        if not self.billing_original_subscriber_id:
            self.billing_original_subscriber_id = self.billing_subscriber_id


# Columns that are not rewritten when the upsert hits an existing row.
IMMUTABLE_ON_CONFLICT = ("id", "user_id", "billing_subscriber_id", "created_at")


def _is_foreign_key_violation(exc: IntegrityError) -> bool:
    orig = exc.orig
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if code == FOREIGN_KEY_VIOLATION:
        return True
    return "foreign key" in str(orig).lower()


def build_upsert_statement(values: RecordValues):
    """Build the guarded ``INSERT ... ON CONFLICT DO UPDATE ... RETURNING id``."""
    row = asdict(values)
    row["id"] = uuid.uuid4()

    stmt = pg_insert(SubscriptionRecord).values(**row)
    update_columns = {
        name: stmt.excluded[name]
        for name in row
        if name not in IMMUTABLE_ON_CONFLICT
    }
    update_columns["updated_at"] = func.now()

    return stmt.on_conflict_do_update(
        index_elements=[SubscriptionRecord.billing_subscriber_id],
        set_=update_columns,
        where=SubscriptionRecord.user_id == stmt.excluded.user_id,
    ).returning(SubscriptionRecord.id)


class SubscriptionStore:
    """Repository for subscription records and skipped webhook events."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # =========================================================================
    # Transaction control (batch jobs persist per subscriber)
    # =========================================================================

    async def commit(self) -> None:
        await self.db.commit()

    async def rollback(self) -> None:
        await self.db.rollback()

    # =========================================================================
    # Queries
    # =========================================================================

    async def find_user_for_subscriber(self, subscriber_id: str) -> Optional[uuid.UUID]:
        """
        Find the local user linked to a RevenueCat subscriber id.

        Matches either the current or the original subscriber id, newest
        record first.
        """
        result = await self.db.execute(
            select(SubscriptionRecord.user_id)
            .where(
                or_(
                    SubscriptionRecord.billing_subscriber_id == subscriber_id,
                    SubscriptionRecord.billing_original_subscriber_id == subscriber_id,
                )
            )
            .order_by(SubscriptionRecord.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_by_subscriber(self, subscriber_id: str) -> Optional[SubscriptionRecord]:
        result = await self.db.execute(
            select(SubscriptionRecord).where(
                SubscriptionRecord.billing_subscriber_id == subscriber_id
            )
        )
        return result.scalar_one_or_none()

    async def get_flags(self, subscriber_id: str) -> Optional[StatusFlags]:
        """Current status flags of a subscriber's record, if it exists."""
        result = await self.db.execute(
            select(SubscriptionRecord.is_active, SubscriptionRecord.will_renew).where(
                SubscriptionRecord.billing_subscriber_id == subscriber_id
            )
        )
        row = result.first()
        if row is None:
            return None
        return StatusFlags(is_active=bool(row.is_active), will_renew=bool(row.will_renew))

    async def latest_for_user(self, user_id: uuid.UUID) -> Optional[SubscriptionRecord]:
        """The user's most recently created record."""
        result = await self.db.execute(
            select(SubscriptionRecord)
            .where(SubscriptionRecord.user_id == user_id)
            .order_by(SubscriptionRecord.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_active(self, limit: int) -> Sequence[SubscriptionRecord]:
        """Active records, least recently updated first."""
        result = await self.db.execute(
            select(SubscriptionRecord)
            .where(SubscriptionRecord.is_active.is_(True))
            .order_by(SubscriptionRecord.updated_at.asc())
            .limit(limit)
        )
        return result.scalars().all()

    # =========================================================================
    # Commands
    # =========================================================================

    async def upsert(self, values: RecordValues) -> uuid.UUID:
        """
        Insert or update the record keyed on ``billing_subscriber_id``.

        Returns:
            The record id.

        Raises:
            PersistenceConflict: the user does not exist (foreign key), or
                the subscriber id is already linked to another user.
        """
        stmt = build_upsert_statement(values)
        try:
            # Savepoint: a rejected insert must not poison the request's transaction.
            async with self.db.begin_nested():
                result = await self.db.execute(stmt)
                record_id = result.scalar_one_or_none()
        except IntegrityError as exc:
            if _is_foreign_key_violation(exc):
                raise PersistenceConflict(
                    PersistenceConflict.FOREIGN_KEY,
                    values.billing_subscriber_id,
                    str(values.user_id),
                ) from exc
            raise

        if record_id is None:
            raise PersistenceConflict(
                PersistenceConflict.OTHER_USER,
                values.billing_subscriber_id,
                str(values.user_id),
            )

        logger.info(
            "Upserted subscription: subscriber=%s user=%s active=%s trial=%s "
            "will_renew=%s period_end=%s",
            values.billing_subscriber_id,
            values.user_id,
            values.is_active,
            values.is_trial,
            values.will_renew,
            values.current_period_end.isoformat(),
        )
        return record_id

    async def _deactivate(self, *criteria) -> int:
        result = await self.db.execute(
            update(SubscriptionRecord)
            .where(SubscriptionRecord.is_active.is_(True), *criteria)
            .values(is_active=False, updated_at=func.now())
        )
        return result.rowcount or 0

    async def deactivate_active_trials(self, user_id: uuid.UUID) -> int:
        """Deactivate every active trial record of a user (trial -> paid conversion)."""
        count = await self._deactivate(
            SubscriptionRecord.user_id == user_id,
            SubscriptionRecord.is_trial.is_(True),
        )
        logger.info("Deactivated %d trial record(s) for user=%s", count, user_id)
        return count

    async def deactivate_other_active(
        self,
        user_id: uuid.UUID,
        keep_subscriber_id: str,
    ) -> int:
        """Deactivate the user's active records other than ``keep_subscriber_id``."""
        count = await self._deactivate(
            SubscriptionRecord.user_id == user_id,
            SubscriptionRecord.billing_subscriber_id != keep_subscriber_id,
        )
        if count:
            logger.info(
                "Deactivated %d other active record(s) for user=%s keep=%s",
                count,
                user_id,
                keep_subscriber_id,
            )
        return count

    async def deactivate_active_for_user(self, user_id: uuid.UUID) -> int:
        """Deactivate all of a user's active records.  Rows are kept."""
        count = await self._deactivate(SubscriptionRecord.user_id == user_id)
        logger.info("Deactivated %d active record(s) for user=%s", count, user_id)
        return count

    async def deactivate_expired(self, now: Optional[datetime] = None) -> int:
        """
        Deactivate active records whose period has ended and that cannot
        have renewed: trials, and paid periods that will not renew.
        """
        now = now or utc_now()
        return await self._deactivate(
            SubscriptionRecord.current_period_end < now,
            or_(
                SubscriptionRecord.is_trial.is_(True),
                SubscriptionRecord.will_renew.is_(False),
            ),
        )

    # =========================================================================
    # Skipped-event ledger
    # =========================================================================

    async def record_skipped_event(
        self,
        subscriber_id: str,
        reason: SkipReason,
        event_id: Optional[str] = None,
        event_type: Optional[str] = None,
        payload: Optional[dict[str, Any]] = None,
    ) -> SkippedBillingEvent:
        skipped = SkippedBillingEvent(
            billing_subscriber_id=subscriber_id,
            event_id=event_id,
            event_type=event_type,
            reason=reason,
            payload=payload,
        )
        self.db.add(skipped)
        await self.db.flush()
        return skipped

    async def list_unresolved_subscribers(self, limit: int) -> list[str]:
        """
        Distinct subscriber ids with unresolved skipped events.

        Never-attempted subscribers come first, then the least recently
        attempted, then the oldest, so subscribers that never resolve
        cannot starve newer ones out of the batch.
        """
        last_attempt = func.max(SkippedBillingEvent.last_attempted_at)
        oldest = func.min(SkippedBillingEvent.created_at)
        result = await self.db.execute(
            select(SkippedBillingEvent.billing_subscriber_id)
            .where(SkippedBillingEvent.resolved_at.is_(None))
            .group_by(SkippedBillingEvent.billing_subscriber_id)
            .order_by(last_attempt.asc().nulls_first(), oldest.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def mark_skipped_attempted(
        self,
        subscriber_id: str,
        now: Optional[datetime] = None,
    ) -> int:
        """Record a sweep attempt that left the subscriber's events unresolved."""
        result = await self.db.execute(
            update(SkippedBillingEvent)
            .where(
                SkippedBillingEvent.billing_subscriber_id == subscriber_id,
                SkippedBillingEvent.resolved_at.is_(None),
            )
            .values(
                attempts=SkippedBillingEvent.attempts + 1,
                last_attempted_at=now or utc_now(),
            )
        )
        return result.rowcount or 0

    async def mark_skipped_resolved(
        self,
        subscriber_id: str,
        now: Optional[datetime] = None,
    ) -> int:
        result = await self.db.execute(
            update(SkippedBillingEvent)
            .where(
                SkippedBillingEvent.billing_subscriber_id == subscriber_id,
                SkippedBillingEvent.resolved_at.is_(None),
            )
            .values(resolved_at=now or utc_now())
        )
        return result.rowcount or 0
