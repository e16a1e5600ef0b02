"""Pure helpers over half-open UTC time ranges.

Weekday indices follow the booking calendar convention: 0 = Sunday through
6 = Saturday.
"""

from datetime import date as date_type, datetime, time, timedelta, timezone
from typing import Union

DAY_NAMES = [
    "Sunday",
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
]


def overlaps(
    start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime
) -> bool:
    """True iff [start_a, end_a) and [start_b, end_b) intersect."""
    return start_a < end_b and start_b < end_a


def buffer(
    start: datetime, end: datetime, buffer_minutes: int
) -> tuple[datetime, datetime]:
    """Expand a range by ``buffer_minutes`` on both sides."""
    delta = timedelta(minutes=buffer_minutes or 0)
    return start - delta, end + delta


def ensure_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime; naive input is taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def calendar_day_bounds(value: Union[datetime, date_type]) -> tuple[datetime, datetime]:
    """UTC bounds [00:00, next 00:00) of the calendar day containing ``value``."""
    if isinstance(value, datetime):
        day = ensure_utc(value).date()
    else:
        day = value
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


def day_of_week(value: Union[datetime, date_type]) -> int:
    """Weekday index with 0 = Sunday."""
    if isinstance(value, datetime):
        value = ensure_utc(value)
    return (value.weekday() + 1) % 7


def day_name(weekday: int) -> str:
    return DAY_NAMES[weekday]


def appointment_range(start: datetime, duration_minutes: int) -> tuple[datetime, datetime]:
    start = ensure_utc(start)
    return start, start + timedelta(minutes=duration_minutes)


def collides(
    start: datetime,
    end: datetime,
    own_buffer_minutes: int,
    other_start: datetime,
    other_end: datetime,
    other_buffer_minutes: int,
) -> bool:
    """Buffered collision between two appointments.

    Each side keeps its own buffer: the pair collides when either raw range
    enters the other's buffered range.
    """
    other_buffered = buffer(other_start, other_end, other_buffer_minutes)
    if overlaps(start, end, *other_buffered):
        return True
    own_buffered = buffer(start, end, own_buffer_minutes)
    return overlaps(other_start, other_end, *own_buffered)
