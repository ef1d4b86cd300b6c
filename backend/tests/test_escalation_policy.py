from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

from reminders_web.escalation import MAX_REMINDER_LEVEL, is_eligible, next_eligible_at, skip_reason

NOW = datetime(2026, 3, 20, 9, 0, tzinfo=timezone.utc)


def test_level_zero_waits_until_due_date_has_passed() -> None:
    assert is_eligible("pending", date(2026, 3, 19), 0, None, NOW) is True
    assert is_eligible("pending", date(2026, 3, 20), 0, None, NOW) is False
    assert is_eligible("pending", date(2026, 3, 21), 0, None, NOW) is False


def test_level_one_needs_seven_days_since_last_reminder() -> None:
    due = date(2026, 2, 1)
    assert is_eligible("pending", due, 1, NOW - timedelta(days=6), NOW) is False
    assert is_eligible("pending", due, 1, NOW - timedelta(days=7), NOW) is True
    assert is_eligible("pending", due, 1, NOW - timedelta(days=9), NOW) is True


def test_level_two_needs_fourteen_days_since_last_reminder() -> None:
    due = date(2026, 1, 1)
    assert is_eligible("pending", due, 2, NOW - timedelta(days=13, hours=23), NOW) is False
    assert is_eligible("pending", due, 2, NOW - timedelta(days=14), NOW) is True


def test_terminal_level_and_non_pending_invoices_are_never_eligible() -> None:
    long_ago = NOW - timedelta(days=365)
    assert is_eligible("pending", date(2025, 1, 1), MAX_REMINDER_LEVEL, long_ago, NOW) is False
    assert is_eligible("paid", date(2025, 1, 1), 0, None, NOW) is False
    assert is_eligible("pending", None, 0, None, NOW) is False
    assert is_eligible("pending", date(2025, 1, 1), 1, None, NOW) is False


def test_example_escalation_timeline() -> None:
    due = date(2024, 1, 1)
    first_run = datetime(2024, 1, 5, tzinfo=timezone.utc)
    assert is_eligible("pending", due, 0, None, first_run) is True

    assert is_eligible("pending", due, 1, first_run, datetime(2024, 1, 10, tzinfo=timezone.utc)) is False
    assert is_eligible("pending", due, 1, first_run, datetime(2024, 1, 13, tzinfo=timezone.utc)) is True


def test_naive_now_is_treated_as_utc() -> None:
    assert is_eligible("pending", date(2026, 3, 19), 0, None, datetime(2026, 3, 20, 0, 30)) is True


def test_next_eligible_at_per_level() -> None:
    sent = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    assert next_eligible_at("pending", date(2026, 3, 10), 0, None) == datetime(2026, 3, 11, tzinfo=timezone.utc)
    assert next_eligible_at("pending", date(2026, 2, 1), 1, sent) == sent + timedelta(days=7)
    assert next_eligible_at("pending", date(2026, 2, 1), 2, sent) == sent + timedelta(days=14)
    assert next_eligible_at("pending", date(2026, 2, 1), 3, sent) is None
    assert next_eligible_at("paid", date(2026, 2, 1), 0, None) is None


def test_skip_reason_classification_order() -> None:
    base = {
        "status": "pending",
        "due_date": date(2026, 3, 1),
        "level": 0,
        "last_sent_at": None,
        "recipient_email": "client@example.com",
        "reminders_paused": False,
        "now": NOW,
    }
    assert skip_reason(**{**base, "reminders_paused": True, "recipient_email": None}) == "paused"
    assert skip_reason(**{**base, "recipient_email": "   "}) == "missing_email"
    assert skip_reason(**{**base, "unsubscribed": True}) == "unsubscribed"
    assert skip_reason(**{**base, "unsubscribed": True, "reminders_paused": True}) == "paused"
    assert skip_reason(**{**base, "unsubscribed": True, "recipient_email": None}) == "missing_email"
    assert skip_reason(**{**base, "level": 1, "last_sent_at": NOW - timedelta(days=2)}) == "not_eligible"
    assert skip_reason(**base) == "other"
