"""
shared/utils/intervals.py
Date-range helpers used by availability checks and booking guards.
"""

from datetime import datetime, timezone
from typing import Optional


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalise a datetime to an aware UTC value.
    Naive values (SQLite returns these) are assumed to already be UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def ranges_overlap(
    a_start: datetime,
    a_end: Optional[datetime],
    b_start: datetime,
    b_end: Optional[datetime],
) -> bool:
    """
    A overlaps B iff A.start <= B.end and A.end >= B.start.

    Boundaries are inclusive, so [10:00, 12:00] and [12:00, 14:00] overlap.
    An end of None means the range is open-ended.
    """
    a_start, a_end, b_start, b_end = (as_utc(v) for v in (a_start, a_end, b_start, b_end))
    starts_before_b_ends = b_end is None or a_start <= b_end
    ends_after_b_starts = a_end is None or a_end >= b_start
    return starts_before_b_ends and ends_after_b_starts
