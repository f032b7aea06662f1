"""
Utilities Module
================

Helper functions and utility classes.
"""

from app.utils.helpers import is_uuid, ms_to_datetime, parse_date, utc_now

__all__ = ["is_uuid", "ms_to_datetime", "parse_date", "utc_now"]
