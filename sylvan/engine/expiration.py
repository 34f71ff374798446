"""
sylvan.engine.expiration — Time-limited task helpers
======================================================

Pure functions, no DB access.  Every function takes an optional ``now``
so callers (and tests) can pin the clock; it defaults to the current UTC
time.

Time-limited tasks carry a ``duration`` (hours, 1–24) and an
``expires_at`` timestamp computed when the task is created or its
duration is changed.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from sylvan.constants import MAX_DURATION_HOURS, MIN_DURATION_HOURS

EXPIRED_REASON = "Task has expired and can no longer be completed"


@dataclass(frozen=True, slots=True)
class ExpirationCheck:
    can_complete: bool
    reason: str | None = None


@dataclass(frozen=True, slots=True)
class MissedTask:
    user_id: str
    task_id: int
    missed_at: datetime


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite hands them back naive)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def utcnow() -> datetime:
    return datetime.now(UTC)


def calculate_expiration(duration_hours: int, now: datetime | None = None) -> datetime:
    """Return ``now + duration_hours``.

    Raises ``ValueError`` if the duration is outside 1–24 hours.
    """
    if not MIN_DURATION_HOURS <= duration_hours <= MAX_DURATION_HOURS:
        raise ValueError(
            f"Duration must be between {MIN_DURATION_HOURS} and "
            f"{MAX_DURATION_HOURS} hours (got {duration_hours})"
        )
    now = ensure_utc(now) or utcnow()
    return now + timedelta(hours=duration_hours)


def is_task_expired(expires_at: datetime | None, now: datetime | None = None) -> bool:
    """A task without an expiry never expires."""
    if expires_at is None:
        return False
    now = ensure_utc(now) or utcnow()
    return now > ensure_utc(expires_at)


def format_expiration_time(expires_at: datetime, now: datetime | None = None) -> str:
    """Human-readable time remaining: ``in 5 minutes``, ``in 3 hours``,
    ``at 14:30`` (UTC) beyond a day, or ``expired``.
    """
    now = ensure_utc(now) or utcnow()
    expires_at = ensure_utc(expires_at)
    remaining = expires_at - now
    if remaining.total_seconds() <= 0:
        return "expired"

    hours = int(remaining.total_seconds() // 3600)
    if hours < 1:
        minutes = int(remaining.total_seconds() // 60)
        return f"in {minutes} minute{'' if minutes == 1 else 's'}"
    if hours < 24:
        return f"in {hours} hour{'' if hours == 1 else 's'}"
    return f"at {expires_at.strftime('%H:%M')}"


def can_complete_task(expires_at: datetime | None, now: datetime | None = None) -> ExpirationCheck:
    if is_task_expired(expires_at, now):
        return ExpirationCheck(can_complete=False, reason=EXPIRED_REASON)
    return ExpirationCheck(can_complete=True)


def mark_task_as_missed(user_id: str, task_id: int, expires_at: datetime) -> MissedTask:
    """The miss is dated at the moment the task expired, not when we noticed."""
    return MissedTask(user_id=user_id, task_id=task_id, missed_at=ensure_utc(expires_at))
