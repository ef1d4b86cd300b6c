from __future__ import annotations

from datetime import datetime, timedelta, timezone

from reminders_web.rate_limits import TriggerRateLimiter

NOW = datetime(2026, 3, 20, 9, 0, tzinfo=timezone.utc)


def test_bucket_is_limited_within_window_and_recovers_after_it() -> None:
    limiter = TriggerRateLimiter(max_attempts=2, window_seconds=60)

    assert limiter.check_and_record("cron:10.0.0.1", now=NOW) is True
    assert limiter.check_and_record("cron:10.0.0.1", now=NOW + timedelta(seconds=1)) is True
    assert limiter.check_and_record("cron:10.0.0.1", now=NOW + timedelta(seconds=2)) is False
    assert limiter.check_and_record("cron:10.0.0.1", now=NOW + timedelta(seconds=62)) is True


def test_buckets_are_independent() -> None:
    limiter = TriggerRateLimiter(max_attempts=1, window_seconds=60)

    assert limiter.check_and_record("cron:10.0.0.1", now=NOW) is True
    assert limiter.check_and_record("cron:10.0.0.2", now=NOW) is True
    assert limiter.check_and_record("cron:10.0.0.1", now=NOW) is False


def test_expired_buckets_are_dropped() -> None:
    limiter = TriggerRateLimiter(max_attempts=5, window_seconds=60)
    for index in range(20):
        limiter.check_and_record(f"cron:10.0.0.{index}", now=NOW)
    assert limiter.tracked_buckets == 20

    assert limiter.check_and_record("cron:10.0.1.1", now=NOW + timedelta(seconds=61)) is True

    assert limiter.tracked_buckets == 1


def test_reset_clears_all_buckets() -> None:
    limiter = TriggerRateLimiter(max_attempts=1, window_seconds=60)
    limiter.check_and_record("manual:owner@example.com", now=NOW)

    limiter.reset()

    assert limiter.tracked_buckets == 0
    assert limiter.check_and_record("manual:owner@example.com", now=NOW) is True
