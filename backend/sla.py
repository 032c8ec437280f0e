"""
FollowFlow: SLA Classifier
==========================
Urgency of a stage given its due date and the server's "now".
"""

from datetime import datetime, timedelta, tzinfo
from typing import Optional, Tuple

from constants import SLA_CONSTANTS
from models import SLAStatus

def _align(a: datetime, b: datetime) -> Tuple[datetime, datetime]:
    """Naive values are read in the zone of the aware one so they can be compared."""
    if (a.tzinfo is None) == (b.tzinfo is None):
        return a, b
    if a.tzinfo is None:
        return a.replace(tzinfo=b.tzinfo), b
    return a, b.replace(tzinfo=a.tzinfo)

def classify(due_date: datetime, now: datetime) -> SLAStatus:
    """
    late    -> due_date < now
    warning -> 0 <= due_date - now <= 15 min (both ends inclusive)
    ontime  -> otherwise
    """
    due_date, now = _align(due_date, now)
    remaining = due_date - now
    if remaining < timedelta(0):
        return SLAStatus.LATE
    if remaining <= SLA_CONSTANTS.WARNING_THRESHOLD:
        return SLAStatus.WARNING
    return SLAStatus.ONTIME

def time_remaining(due_date: datetime, now: datetime) -> timedelta:
    due_date, now = _align(due_date, now)
    return due_date - now

def _local(value: datetime, tz: Optional[tzinfo]) -> datetime:
    if tz is None or value.tzinfo is None:
        return value
    return value.astimezone(tz)

def is_due_today(due_date: datetime, now: datetime, tz: Optional[tzinfo] = None) -> bool:
    """
    Dashboard refinement: same calendar date in the operator's zone.
    Informational only, never changes classify().
    """
    due_date, now = _align(due_date, now)
    return _local(due_date, tz).date() == _local(now, tz).date()

def format_due_date(due_date: Optional[datetime], now: datetime, tz: Optional[tzinfo] = None) -> str:
    """Short label relative to today, e.g. 'Today at 14:00' or '25/01 at 08:00'."""
    if due_date is None:
        return SLA_CONSTANTS.INVALID_DATE_LABEL
    due_date, now = _align(due_date, now)
    due_local, now_local = _local(due_date, tz), _local(now, tz)
    time_string = due_local.strftime("%H:%M")

    if due_local.date() == now_local.date():
        return f"Today at {time_string}"
    if due_local.date() == (now_local + timedelta(days=1)).date():
        return f"Tomorrow at {time_string}"
    return f"{due_local.strftime('%d/%m')} at {time_string}"
