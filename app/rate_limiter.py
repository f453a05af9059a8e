"""Fixed-window rate limiter keyed by an arbitrary string.

Each key owns at most one window record. A request either opens a fresh
window (no record, or the old window has elapsed), consumes one slot in the
current window, or is denied until the window resets. Bursts straddling a
window boundary can reach twice the nominal rate; the configured limit is
kept well under the provider quota to absorb that.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="rate_limiter")


@dataclass
class RateWindowRecord:
    """Request count inside the current window and when that window ends (epoch seconds)."""
    count: int
    window_reset_at: float


@dataclass(frozen=True)
class RateLimitDecision:
    """Result of an admission check."""
    allowed: bool
    retry_after: Optional[datetime] = None


def _to_datetime(epoch_seconds: float) -> datetime:
    return datetime.fromtimestamp(epoch_seconds, tz=timezone.utc)


class RateLimiter:
    """Thread-safe fixed-window limiter; every read-modify-write runs under one lock."""

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_requests <= 0:
            raise ValueError("max_requests must be positive")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._records: Dict[str, RateWindowRecord] = {}
        self._lock = threading.Lock()

    def can_proceed(self, key: str) -> RateLimitDecision:
        """Admit or deny one request for `key`, consuming a slot when admitted."""
        with self._lock:
            now = self._clock()
            record = self._records.get(key)

            if record is None or now >= record.window_reset_at:
                self._records[key] = RateWindowRecord(count=1, window_reset_at=now + self.window_seconds)
                return RateLimitDecision(allowed=True)

            if record.count < self.max_requests:
                record.count += 1
                return RateLimitDecision(allowed=True)

            retry_after = _to_datetime(record.window_reset_at)

        logger.warning(
            f"Rate limit reached for {key}; retry after {retry_after.isoformat()}",
            extra={"key": key, "retry_after": retry_after.isoformat()},
        )
        return RateLimitDecision(allowed=False, retry_after=retry_after)

    def remaining(self, key: str) -> int:
        """Requests left in the current window, without consuming one."""
        with self._lock:
            record = self._records.get(key)
            if record is None or self._clock() >= record.window_reset_at:
                return self.max_requests
            return max(0, self.max_requests - record.count)

    def reset_time(self, key: str) -> Optional[datetime]:
        """When the key's current window ends, or None if the key has no record."""
        with self._lock:
            record = self._records.get(key)
            return _to_datetime(record.window_reset_at) if record else None

    def status(self, key: str) -> dict:
        """Read-only snapshot for operational visibility."""
        remaining = self.remaining(key)
        return {
            "remaining_requests": remaining,
            "reset_time": self.reset_time(key),
            "can_proceed": remaining > 0,
        }

    def cleanup(self) -> int:
        """Drop records whose window has elapsed; returns how many were removed."""
        with self._lock:
            now = self._clock()
            stale = [key for key, record in self._records.items() if now >= record.window_reset_at]
            for key in stale:
                del self._records[key]
        if stale:
            logger.debug("Swept elapsed rate-limit windows", extra={"removed": len(stale)})
        return len(stale)
