from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Literal

MAX_REMINDER_LEVEL = 3
LEVEL_DELAYS: dict[int, timedelta] = {
    1: timedelta(days=7),
    2: timedelta(days=14),
}

SkipReason = Literal["paused", "unsubscribed", "missing_email", "not_eligible", "other"]
SKIP_REASONS: tuple[SkipReason, ...] = ("paused", "unsubscribed", "missing_email", "not_eligible", "other")


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def is_eligible(
    status: str,
    due_date: date | None,
    level: int,
    last_sent_at: datetime | None,
    now: datetime,
) -> bool:
    """Return whether an invoice may be claimed for its next reminder level.

    Level 0 waits until the due date has fully passed (the UTC date of ``now``
    is after ``due_date``). Levels 1 and 2 wait 7 and 14 days after the
    previous reminder. Level 3 is terminal.
    """
    if status != "pending" or due_date is None or level >= MAX_REMINDER_LEVEL:
        return False
    current = _coerce_utc(now)
    if level <= 0:
        return current.date() > due_date
    delay = LEVEL_DELAYS.get(level)
    if delay is None or last_sent_at is None:
        return False
    return _coerce_utc(last_sent_at) <= current - delay


def next_eligible_at(
    status: str,
    due_date: date | None,
    level: int,
    last_sent_at: datetime | None,
) -> datetime | None:
    if status != "pending" or due_date is None or level >= MAX_REMINDER_LEVEL:
        return None
    if level <= 0:
        return datetime.combine(due_date + timedelta(days=1), time.min, tzinfo=timezone.utc)
    delay = LEVEL_DELAYS.get(level)
    if delay is None or last_sent_at is None:
        return None
    return _coerce_utc(last_sent_at) + delay


def skip_reason(
    *,
    status: str,
    due_date: date | None,
    level: int,
    last_sent_at: datetime | None,
    recipient_email: str | None,
    reminders_paused: bool,
    now: datetime,
    unsubscribed: bool = False,
) -> SkipReason:
    """Classify an open invoice that a run did not claim.

    ``reminders_paused`` covers both a paused invoice and a paused customer.
    """
    if reminders_paused:
        return "paused"
    if not (recipient_email or "").strip():
        return "missing_email"
    if unsubscribed:
        return "unsubscribed"
    if not is_eligible(status, due_date, level, last_sent_at, now):
        return "not_eligible"
    # Eligible but not claimed by this run: another trigger won the claim or the batch was full.
    return "other"
