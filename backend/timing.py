"""
FollowFlow: Timing Resolver
===========================
Turns a stage's timing rule plus the procedure date into a concrete due date.
Pure functions only: no clock reads, so tests can pin literal timestamps.
"""

import re
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from constants import TimingUnit
from models import InvalidTimingRule, TimingRule

_TIME_OF_DAY = re.compile(r"^\s*(\d{1,2}):(\d{2})\s*$")

def parse_time_of_day(value: Optional[str]) -> Tuple[int, int]:
    """Parses a 24-hour 'HH:MM' string into (hour, minute)."""
    if not isinstance(value, str):
        raise InvalidTimingRule(f"Time of day must be 'HH:MM', got {value!r}")
    match = _TIME_OF_DAY.match(value)
    if not match:
        raise InvalidTimingRule(f"Time of day must be 'HH:MM', got {value!r}")
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        raise InvalidTimingRule(f"Time of day out of range: {value!r}")
    return hour, minute

def _as_int(value, label: str) -> int:
    # bool is an int subclass; a checkbox value is never a valid offset
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidTimingRule(f"Timing {label} must be an integer, got {value!r}")
    return value

def _add_elapsed(reference: datetime, delta: timedelta) -> datetime:
    """
    Minute/hour offsets are elapsed time. For zone-aware references the sum is
    taken in UTC so a DST jump shifts the wall clock instead of the duration.
    """
    if reference.tzinfo is None:
        return reference + delta
    return (reference.astimezone(timezone.utc) + delta).astimezone(reference.tzinfo)

def _resolve_delay(reference: datetime, rule: TimingRule) -> datetime:
    value = _as_int(rule.value, "delay value")
    try:
        unit = TimingUnit.from_value(rule.unit)
    except ValueError as exc:
        raise InvalidTimingRule(str(exc)) from exc

    if unit == TimingUnit.MINUTES:
        return _add_elapsed(reference, timedelta(minutes=value))
    if unit == TimingUnit.HOURS:
        return _add_elapsed(reference, timedelta(hours=value))
    # Days/weeks are calendar steps: same wall-clock time N days later
    if unit == TimingUnit.DAYS:
        return reference + timedelta(days=value)
    return reference + timedelta(weeks=value)

def _resolve_specific(reference: datetime, rule: TimingRule) -> datetime:
    days_after = _as_int(rule.days_after, "daysAfter")
    hour, minute = parse_time_of_day(rule.time)
    day = reference + timedelta(days=days_after)
    return day.replace(hour=hour, minute=minute, second=0, microsecond=0)

def resolve_due_date(reference_date: datetime, rule: Optional[TimingRule]) -> datetime:
    """
    Due date of a stage.

    - delay{value, unit}: reference + value units.
    - specific{daysAfter, time}: reference's date + daysAfter days, at HH:MM:00.

    Raises InvalidTimingRule for an unknown tag, a missing payload, an unknown
    unit, or a time that is not 'HH:MM'.
    """
    if rule is None:
        raise InvalidTimingRule("Stage has no timing rule")
    if not isinstance(reference_date, datetime):
        raise InvalidTimingRule(f"Reference date must be a datetime, got {type(reference_date)}")
    try:
        if rule.kind == "delay":
            return _resolve_delay(reference_date, rule)
        if rule.kind == "specific":
            return _resolve_specific(reference_date, rule)
    except OverflowError as exc:
        raise InvalidTimingRule(f"Timing offset out of range: {rule}") from exc
    raise InvalidTimingRule(f"Unknown timing rule type: {rule.kind!r}")
