"""
Helper Functions
================

Common utility functions used across the application.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Optional


def utc_now() -> datetime:
    """Get current UTC datetime with timezone info."""
    return datetime.now(timezone.utc)


def ms_to_datetime(value: Any) -> Optional[datetime]:
    """Convert RevenueCat epoch milliseconds to an aware UTC datetime."""
    if value is None or isinstance(value, bool):
        return None
    try:
        return datetime.fromtimestamp(float(value) / 1000, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def parse_date(date_str: Optional[str]) -> Optional[datetime]:
    """Parse an ISO 8601 date string (``Z`` suffix allowed) to datetime."""
    if not date_str:
        return None
    try:
        dt = datetime.fromisoformat(date_str.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def is_uuid(value: Optional[str]) -> bool:
    """Check whether a string is a canonical hyphenated UUID."""
    if not value:
        return False
    try:
        return str(uuid.UUID(value)) == value.lower()
    except (ValueError, AttributeError, TypeError):
        return False
