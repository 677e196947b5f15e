"""Half-open interval arithmetic shared by admission, quota and waitlist code.

Intervals are ``[start, end)``: two intervals that only touch
(``end1 == start2``) do not overlap.
"""

from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import and_

from ..core.exceptions import InvalidIntervalError


def validate_interval(start: datetime, end: datetime) -> None:
    """Raise InvalidIntervalError unless start < end."""
    if start >= end:
        raise InvalidIntervalError(start, end)


def intervals_overlap(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    """True if [a_start, a_end) and [b_start, b_end) share at least one instant."""
    return a_start < b_end and b_start < a_end


def overlap_clause(start_col, end_col, start: datetime, end: datetime):
    """SQL form of :func:`intervals_overlap` for a row interval against [start, end)."""
    return and_(start_col < end, end_col > start)


def contains(outer_start: datetime, outer_end: datetime, start: datetime, end: datetime) -> bool:
    """True if [start, end) lies entirely within [outer_start, outer_end]."""
    return outer_start <= start and end <= outer_end


def duration_hours(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 3600.0


def clipped_hours(start: datetime, end: datetime, window_start: datetime, window_end: datetime) -> float:
    """Hours of [start, end) that fall inside [window_start, window_end]."""
    lo = max(start, window_start)
    hi = min(end, window_end)
    if hi <= lo:
        return 0.0
    return duration_hours(lo, hi)


def whole_minutes(delta: timedelta) -> int:
    """Minutes in delta, truncated toward zero."""
    return int(delta.total_seconds() / 60)


def whole_days(delta: timedelta) -> int:
    """Days in delta, truncated toward zero."""
    return int(delta.total_seconds() / 86400)


def return_correction_deadline(
    returned_at: datetime,
    next_start: Optional[datetime],
    window: timedelta,
    buffer: timedelta,
) -> datetime:
    """
    Last instant at which a return may still be undone.

    The window closes ``window`` after the return, or ``buffer`` before the
    next reservation of the same resource starts, whichever comes first.
    """
    deadline = returned_at + window
    if next_start is not None:
        deadline = min(deadline, next_start - buffer)
    return deadline


def is_within_return_correction_window(
    returned_at: datetime,
    now: datetime,
    next_start: Optional[datetime],
    window: timedelta = timedelta(hours=1),
    buffer: timedelta = timedelta(minutes=15),
) -> bool:
    return now <= return_correction_deadline(returned_at, next_start, window, buffer)
