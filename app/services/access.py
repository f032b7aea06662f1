"""
Access Evaluation
=================

Read-side view of a stored subscription: trial countdown, expiry
warning, and whether the user currently has access.
"""

import math
from datetime import datetime
from typing import Optional

from app.models.subscription import SubscriptionRecord
from app.schemas.subscription import TrialStatus, TrialWarning
from app.utils.helpers import utc_now

SECONDS_PER_DAY = 86400


def get_trial_status(record: SubscriptionRecord, now: Optional[datetime] = None) -> TrialStatus:
    now = now or utc_now()
    is_trial = bool(record.is_trial)
    has_expired = is_trial and now > record.current_period_end

    days_remaining = 0
    if is_trial:
        remaining = (record.current_period_end - now).total_seconds() / SECONDS_PER_DAY
        days_remaining = max(0, math.ceil(remaining))

    return TrialStatus(
        is_trial=is_trial,
        is_active=bool(record.is_active) and not has_expired,
        trial_expires_at=record.current_period_end if is_trial else None,
        days_remaining=days_remaining,
        has_expired=has_expired,
    )


def has_valid_access(record: SubscriptionRecord, now: Optional[datetime] = None) -> bool:
    """Paid records follow ``is_active``; trials must also be unexpired."""
    status = get_trial_status(record, now)
    if not status.is_trial:
        return bool(record.is_active)
    return status.is_active


def get_trial_warning(status: TrialStatus) -> Optional[TrialWarning]:
    """Warning to surface for a trial that has expired or ends within a day."""
    if not status.is_trial:
        return None
    if status.has_expired:
        return TrialWarning(warning_type="expired", days_remaining=0)
    if status.days_remaining == 0:
        return TrialWarning(warning_type="expiring_today", days_remaining=0)
    if status.days_remaining <= 1:
        return TrialWarning(warning_type="expiring_soon", days_remaining=status.days_remaining)
    return None
