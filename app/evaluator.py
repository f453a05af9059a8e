"""Evaluate threshold rules against live weather and record the outcome.

A cycle loads every active rule, evaluates each one independently (in a small
thread pool), and appends one history row per successful evaluation. A rule
that cannot be evaluated (unknown parameter or operator, unresolvable
location, rate limiting, upstream failure) is logged and reported in the
returned results but never aborts the cycle and never produces a history row.

Cycles never overlap: `run_cycle` holds a non-blocking lock for its whole
duration, and a call that finds a cycle already running is skipped.
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Callable, List, Optional

from app.data_sources.tomorrow_io_client import WeatherSnapshot
from app.domain import (
    ComparisonOperator,
    EvaluationResult,
    Rule,
    RuleStatus,
    WeatherParameter,
)
from app.errors import CycleInProgressError, NotFoundError, UnknownOperatorError, UnknownParameterError
from app.rule_store.base import RuleStore
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="evaluator")

EQUALITY_TOLERANCE = 0.01


def extract_parameter(snapshot: WeatherSnapshot, parameter: str) -> float:
    """Return the snapshot value a rule's `parameter` refers to."""
    try:
        field = WeatherParameter(parameter).snapshot_field
    except ValueError:
        raise UnknownParameterError(parameter) from None
    return float(getattr(snapshot, field))


def compare(observed: float, operator: str, threshold: float) -> bool:
    """Apply a rule operator; eq/ne use an absolute tolerance of 0.01."""
    try:
        op = ComparisonOperator(operator)
    except ValueError:
        raise UnknownOperatorError(operator) from None

    if op is ComparisonOperator.GT:
        return observed > threshold
    if op is ComparisonOperator.GTE:
        return observed >= threshold
    if op is ComparisonOperator.LT:
        return observed < threshold
    if op is ComparisonOperator.LTE:
        return observed <= threshold
    if op is ComparisonOperator.EQ:
        return abs(observed - threshold) < EQUALITY_TOLERANCE
    return abs(observed - threshold) >= EQUALITY_TOLERANCE


class RuleEvaluator:
    """Walks active rules, fetches weather through the client, records history."""

    def __init__(
        self,
        store: RuleStore,
        fetch_weather: Callable[[str], WeatherSnapshot],
        *,
        max_workers: int = 4,
    ) -> None:
        """`fetch_weather` is normally `WeatherClient.get_current_weather`."""
        self.store = store
        self.fetch_weather = fetch_weather
        self.max_workers = max_workers
        self._cycle_lock = threading.Lock()
        self.last_cycle_started_at: Optional[datetime] = None
        self.last_cycle_finished_at: Optional[datetime] = None

    @property
    def is_running(self) -> bool:
        return self._cycle_lock.locked()

    def evaluate_rule(self, rule: Rule) -> EvaluationResult:
        """Evaluate one rule; errors propagate to the caller unchanged."""
        snapshot = self.fetch_weather(rule.location)
        observed = extract_parameter(snapshot, rule.parameter)
        triggered = compare(observed, rule.operator, rule.threshold)
        return EvaluationResult(
            rule_id=rule.id,
            rule_name=rule.name,
            location=rule.location,
            parameter=rule.parameter,
            operator=rule.operator,
            threshold=rule.threshold,
            observed_value=observed,
            is_triggered=triggered,
        )

    def evaluate_one(self, rule_id: str, *, record: bool = False) -> EvaluationResult:
        """On-demand evaluation of any existing rule, active or not.

        Raises NotFoundError for unknown ids and lets acquisition and rule
        errors through. History is only appended when `record` is True.
        """
        rule = self.store.get_rule(rule_id)
        if rule is None:
            raise NotFoundError(rule_id)
        result = self.evaluate_rule(rule)
        if record:
            self.store.append_evaluation(result.to_record())
        logger.info(
            "Evaluated rule on demand",
            extra={"rule_id": rule_id, "is_triggered": result.is_triggered, "recorded": record},
        )
        return result

    def run_cycle(self, *, raise_if_running: bool = False) -> List[EvaluationResult]:
        """Evaluate every active rule once.

        If a cycle is already running the call is skipped: it returns [] or,
        with `raise_if_running`, raises CycleInProgressError.
        """
        if not self._cycle_lock.acquire(blocking=False):
            logger.warning("Evaluation cycle already running; skipping this tick")
            if raise_if_running:
                raise CycleInProgressError()
            return []
        try:
            self.last_cycle_started_at = datetime.now(timezone.utc)
            rules = self.store.list_active_rules()
            if not rules:
                logger.info("No active rules to evaluate")
                return []

            logger.info("Starting evaluation cycle", extra={"rules": len(rules)})
            workers = max(1, min(self.max_workers, len(rules)))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="rule-eval") as pool:
                results = list(pool.map(self._evaluate_and_record, rules))

            failed = sum(1 for r in results if not r.succeeded)
            triggered = sum(1 for r in results if r.is_triggered)
            logger.info(
                "Completed evaluation cycle",
                extra={"rules": len(rules), "failed": failed, "triggered": triggered},
            )
            return results
        finally:
            self.last_cycle_finished_at = datetime.now(timezone.utc)
            self._cycle_lock.release()

    def _evaluate_and_record(self, rule: Rule) -> EvaluationResult:
        """Evaluate and persist one rule, containing any failure to its result."""
        try:
            result = self.evaluate_rule(rule)
        except Exception as exc:
            logger.error(
                f"Failed to evaluate rule {rule.name} ({rule.id}): {type(exc).__name__}: {exc}",
                extra={"rule_id": rule.id, "error_type": type(exc).__name__, "error": str(exc)},
            )
            return EvaluationResult(
                rule_id=rule.id,
                rule_name=rule.name,
                location=rule.location,
                parameter=rule.parameter,
                operator=rule.operator,
                threshold=rule.threshold,
                error=str(exc),
                error_type=type(exc).__name__,
            )

        try:
            self.store.append_evaluation(result.to_record())
        except Exception as exc:
            logger.error(
                f"Failed to save evaluation of rule {rule.id}: {exc}",
                extra={"rule_id": rule.id, "error": str(exc)},
            )
            return result.model_copy(update={"error": f"history write failed: {exc}", "error_type": type(exc).__name__})

        logger.debug(
            "Rule evaluation recorded",
            extra={
                "rule_id": rule.id,
                "is_triggered": result.is_triggered,
                "observed_value": result.observed_value,
                "threshold": rule.threshold,
            },
        )
        return result

    def current_status(self) -> List[RuleStatus]:
        """Active rules with their latest recorded evaluation."""
        rules = self.store.list_active_rules()
        latest = self.store.latest_evaluations(rule.id for rule in rules)
        statuses = []
        for rule in rules:
            last = latest.get(rule.id)
            statuses.append(
                RuleStatus(
                    id=rule.id,
                    name=rule.name,
                    location=rule.location,
                    parameter=rule.parameter,
                    operator=rule.operator,
                    threshold=rule.threshold,
                    unit=rule.unit,
                    is_active=rule.is_active,
                    last_evaluation=last,
                    is_currently_triggered=bool(last and last.is_triggered),
                )
            )
        return statuses
