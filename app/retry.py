"""Bounded exponential-backoff retries around a zero-argument operation."""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Generic, Optional, TypeVar

from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="retry")

T = TypeVar("T")

# Any of these statuses ends the run on its first occurrence.
# TODO: revisit 500/502/503 once provider incident data shows whether they clear within the backoff window.
NON_RETRYABLE_STATUS_CODES = frozenset({400, 401, 403, 500, 502, 503})


def is_retryable(exc: BaseException) -> bool:
    """Classify an error by its `status_code` attribute; errors without one are retryable."""
    status = getattr(exc, "status_code", None)
    return status not in NON_RETRYABLE_STATUS_CODES


@dataclass
class RetryOutcome(Generic[T]):
    """What happened across all attempts of one `execute` call."""
    succeeded: bool
    attempts: int
    last_attempt_at: datetime
    value: Optional[T] = None
    error: Optional[BaseException] = None


class RetryHandler:
    """Run an operation up to `max_attempts` times with capped exponential backoff.

    The delay starts at `base_delay` seconds, is multiplied by
    `backoff_multiplier` after each failed attempt and never exceeds
    `max_delay`. There is no sleep after the final attempt. Errors for which
    `should_retry` returns False end the run immediately.

    Sleeping blocks only the calling thread, so concurrent evaluations keep
    running while one of them backs off.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 5.0,
        backoff_multiplier: float = 2.0,
        *,
        should_retry: Callable[[BaseException], bool] = is_retryable,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.backoff_multiplier = backoff_multiplier
        self.should_retry = should_retry
        self._sleep = sleep

    def execute(self, operation: Callable[[], T]) -> RetryOutcome[T]:
        """Call `operation` until it succeeds, fails fatally, or attempts run out."""
        delay = self.base_delay
        last_error: Optional[BaseException] = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                value = operation()
            except Exception as exc:
                last_error = exc
                if not self.should_retry(exc):
                    logger.warning(
                        f"Non-retryable failure on attempt {attempt}: {exc}",
                        extra={"attempt": attempt, "error": str(exc), "status_code": getattr(exc, "status_code", None)},
                    )
                    return RetryOutcome(succeeded=False, error=exc, attempts=attempt, last_attempt_at=_now())
                if attempt == self.max_attempts:
                    break
                logger.warning(
                    f"Attempt {attempt}/{self.max_attempts} failed; retrying in {delay:g}s: {exc}",
                    extra={"attempt": attempt, "max_attempts": self.max_attempts, "delay_seconds": delay, "error": str(exc)},
                )
                self._sleep(delay)
                delay = min(delay * self.backoff_multiplier, self.max_delay)
            else:
                return RetryOutcome(succeeded=True, value=value, attempts=attempt, last_attempt_at=_now())

        logger.warning(
            f"Retries exhausted after {self.max_attempts} attempts: {last_error}",
            extra={"attempts": self.max_attempts, "error": str(last_error)},
        )
        return RetryOutcome(succeeded=False, error=last_error, attempts=self.max_attempts, last_attempt_at=_now())


def _now() -> datetime:
    return datetime.now(timezone.utc)
