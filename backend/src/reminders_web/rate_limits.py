from __future__ import annotations

from datetime import datetime, timedelta, timezone
from threading import Lock


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class TriggerRateLimiter:
    """Sliding-window limit on reminder triggers, keyed by caller bucket."""

    def __init__(self, *, max_attempts: int, window_seconds: int) -> None:
        self._lock = Lock()
        self._max_attempts = max(1, max_attempts)
        self._window = timedelta(seconds=max(1, window_seconds))
        self._attempts: dict[str, list[datetime]] = {}

    @property
    def tracked_buckets(self) -> int:
        with self._lock:
            return len(self._attempts)

    def reset(self) -> None:
        with self._lock:
            self._attempts.clear()

    def _prune(self, cutoff: datetime) -> None:
        # Buckets whose newest attempt left the window hold no state worth keeping.
        expired = [bucket for bucket, attempts in self._attempts.items() if not attempts or max(attempts) <= cutoff]
        for bucket in expired:
            self._attempts.pop(bucket, None)

    def check_and_record(self, bucket: str, *, now: datetime | None = None) -> bool:
        with self._lock:
            current = now or _now_utc()
            cutoff = current - self._window
            self._prune(cutoff)
            recent = [ts for ts in self._attempts.get(bucket, []) if ts > cutoff]
            if len(recent) >= self._max_attempts:
                self._attempts[bucket] = recent
                return False
            recent.append(current)
            self._attempts[bucket] = recent
            return True
