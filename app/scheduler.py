"""Background scheduling for the evaluation cycle and housekeeping sweeps.

Three interval jobs run on one APScheduler BackgroundScheduler:

- the rule evaluation cycle (default every 5 minutes),
- the response-cache sweep,
- the rate-limiter sweep.

Every job runs with `max_instances=1` and `coalesce=True`: a tick that fires
while the previous run of the same job is still going is dropped rather than
started alongside it, and missed ticks collapse into one.
"""

from __future__ import annotations

from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from app.cache import TTLCache
from app.evaluator import RuleEvaluator
from app.rate_limiter import RateLimiter
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="scheduler")

EVALUATION_JOB_ID = "rule_evaluation"
CACHE_SWEEP_JOB_ID = "cache_sweep"
RATE_LIMIT_SWEEP_JOB_ID = "rate_limit_sweep"


def _guarded(name: str, func: Callable[[], object]) -> Callable[[], None]:
    """Wrap a job so a failure is logged and the next tick still runs."""
    def run() -> None:
        try:
            func()
        except Exception:
            logger.exception(f"Scheduled job '{name}' failed")
    run.__name__ = f"{name}_job"
    return run


class EvaluationScheduler:
    """Owns the BackgroundScheduler and its three jobs."""

    def __init__(
        self,
        evaluator: RuleEvaluator,
        *,
        cache: TTLCache | None = None,
        rate_limiter: RateLimiter | None = None,
        evaluation_interval_seconds: float = 300.0,
        cache_cleanup_interval_seconds: float = 120.0,
        rate_limit_cleanup_interval_seconds: float = 300.0,
        evaluation_enabled: bool = True,
        scheduler: Optional[BackgroundScheduler] = None,
    ) -> None:
        self.evaluator = evaluator
        self.cache = cache
        self.rate_limiter = rate_limiter
        self.evaluation_interval_seconds = evaluation_interval_seconds
        self.cache_cleanup_interval_seconds = cache_cleanup_interval_seconds
        self.rate_limit_cleanup_interval_seconds = rate_limit_cleanup_interval_seconds
        self.evaluation_enabled = evaluation_enabled
        self._scheduler = scheduler or BackgroundScheduler(timezone="UTC")
        self._jobs_added = False

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def _add_jobs(self) -> None:
        if self.evaluation_enabled:
            self._scheduler.add_job(
                _guarded(EVALUATION_JOB_ID, self.evaluator.run_cycle),
                IntervalTrigger(seconds=self.evaluation_interval_seconds),
                id=EVALUATION_JOB_ID,
                name="Rule evaluation cycle",
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )
        if self.cache is not None:
            self._scheduler.add_job(
                _guarded(CACHE_SWEEP_JOB_ID, self.cache.cleanup),
                IntervalTrigger(seconds=self.cache_cleanup_interval_seconds),
                id=CACHE_SWEEP_JOB_ID,
                name="Cache sweep",
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )
        if self.rate_limiter is not None:
            self._scheduler.add_job(
                _guarded(RATE_LIMIT_SWEEP_JOB_ID, self.rate_limiter.cleanup),
                IntervalTrigger(seconds=self.rate_limit_cleanup_interval_seconds),
                id=RATE_LIMIT_SWEEP_JOB_ID,
                name="Rate-limit sweep",
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )
        self._jobs_added = True

    def job_ids(self) -> list[str]:
        return [job.id for job in self._scheduler.get_jobs()]

    def start(self) -> None:
        """Register jobs and start the background thread (idempotent)."""
        if self.running:
            return
        if not self._jobs_added:
            self._add_jobs()
        self._scheduler.start()
        logger.info(
            "Scheduler started",
            extra={
                "jobs": self.job_ids(),
                "evaluation_interval_seconds": self.evaluation_interval_seconds,
            },
        )

    def shutdown(self, wait: bool = True) -> None:
        """Stop scheduling; with `wait`, in-flight jobs finish first."""
        if not self.running:
            return
        self._scheduler.shutdown(wait=wait)
        logger.info("Scheduler stopped")
