"""
fintrack/features/entitlements/duration.py

Duration arithmetic for access grants. Pure functions, no I/O.

Two day counts coexist:
- `time_left` / `remaining_days` floor every component (countdown and warning window).
- `display_days_remaining` uses ceiling, so a badge reads "1 day" while any
  time is left.
Expiration itself is decided by `is_expired` on raw seconds, never on either
day count.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, NamedTuple, Optional

from fintrack.models.entitlement import EntitlementRecord, SECONDS_PER_DAY

SECONDS_PER_HOUR = 60 * 60
SECONDS_PER_MINUTE = 60

_ONE_SECOND = timedelta(seconds=1)


class TimeLeft(NamedTuple):
    days: int
    hours: int
    minutes: int


def _coerce_seconds(value: Any) -> int:
    if value is None:
        return 0
    try:
        return max(0, int(value))
    except (TypeError, ValueError, OverflowError):
        return 0


def _as_datetime(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _normalize_now(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now


def remaining_seconds(access_duration_seconds: Any, granted_at: Any, now: Optional[datetime] = None) -> int:
    """Grant duration minus whole elapsed seconds since `granted_at`.

    Not clamped: a lapsed grant yields a negative number. Malformed or negative
    durations count as zero; a missing `granted_at` leaves nothing remaining.
    """
    start = _as_datetime(granted_at)
    if start is None:
        return 0
    elapsed = (_normalize_now(now) - start) // _ONE_SECOND
    return _coerce_seconds(access_duration_seconds) - elapsed


def decompose(seconds: int) -> TimeLeft:
    rem = max(0, seconds)
    return TimeLeft(
        days=rem // SECONDS_PER_DAY,
        hours=(rem % SECONDS_PER_DAY) // SECONDS_PER_HOUR,
        minutes=(rem % SECONDS_PER_HOUR) // SECONDS_PER_MINUTE,
    )


def time_left(access_duration_seconds: Any, granted_at: Any, now: Optional[datetime] = None) -> TimeLeft:
    return decompose(remaining_seconds(access_duration_seconds, granted_at, now))


def remaining_days(access_duration_seconds: Any, granted_at: Any, now: Optional[datetime] = None) -> int:
    return time_left(access_duration_seconds, granted_at, now).days


def remaining_hours(access_duration_seconds: Any, granted_at: Any, now: Optional[datetime] = None) -> int:
    return time_left(access_duration_seconds, granted_at, now).hours


def remaining_minutes(access_duration_seconds: Any, granted_at: Any, now: Optional[datetime] = None) -> int:
    return time_left(access_duration_seconds, granted_at, now).minutes


def display_days_remaining(access_duration_seconds: Any, granted_at: Any, now: Optional[datetime] = None) -> int:
    """Badge count: ceiling of remaining days, never negative."""
    if not access_duration_seconds or granted_at is None:
        return 0
    rem = max(0, remaining_seconds(access_duration_seconds, granted_at, now))
    return -(-rem // SECONDS_PER_DAY)


def is_expired(record: EntitlementRecord, now: Optional[datetime] = None) -> bool:
    if record.is_admin or record.is_approved:
        return False
    if record.access_duration_seconds is None or record.granted_at is None:
        return True
    return remaining_seconds(record.access_duration_seconds, record.granted_at, now) <= 0


def expiration_of(record: EntitlementRecord) -> Optional[datetime]:
    """End of the grant window, or None when the record has no window."""
    if record.access_duration_seconds is None or record.granted_at is None:
        return None
    return record.granted_at + timedelta(seconds=record.access_duration_seconds)


def status_tier(days: int) -> str:
    if days <= 3:
        return "critical"
    if days <= 7:
        return "warning"
    return "ok"


def describe_time_left(left: TimeLeft) -> str:
    if left.days == 0:
        return f"{left.hours}h {left.minutes}min of access"
    unit = "day" if left.days == 1 else "days"
    return f"{left.days} {unit} of access"
