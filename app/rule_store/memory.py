"""In-memory rule store, intended for development and tests."""

import threading
from typing import Dict, Iterable, List, Optional

from app.domain import EvaluationRecord, Rule
from app.rule_store.base import RuleStore
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="rule_store/in_memory_rule_store")


class InMemoryRuleStore(RuleStore):
    """Thread-safe store holding rules and their history in dicts/lists."""

    def __init__(self, rules: Iterable[Rule] = ()) -> None:
        logger.debug("Initializing InMemoryRuleStore")
        self._rules: Dict[str, Rule] = {}
        self._history: List[EvaluationRecord] = []
        self._lock = threading.Lock()
        for rule in rules:
            self.add_rule(rule)

    def add_rule(self, rule: Rule) -> None:
        """Seed or replace a rule (dev/test only; rule management is external)."""
        with self._lock:
            self._rules[rule.id] = rule

    def list_active_rules(self) -> List[Rule]:
        with self._lock:
            return [rule for rule in self._rules.values() if rule.is_active]

    def get_rule(self, rule_id: str) -> Optional[Rule]:
        with self._lock:
            return self._rules.get(rule_id)

    def append_evaluation(self, record: EvaluationRecord) -> None:
        with self._lock:
            self._history.append(record)

    def history(self, rule_id: Optional[str] = None) -> List[EvaluationRecord]:
        """Return history rows in insertion order, optionally for one rule."""
        with self._lock:
            if rule_id is None:
                return list(self._history)
            return [r for r in self._history if r.rule_id == rule_id]

    def latest_evaluations(self, rule_ids: Iterable[str]) -> Dict[str, EvaluationRecord]:
        wanted = set(rule_ids)
        latest: Dict[str, EvaluationRecord] = {}
        with self._lock:
            for record in self._history:
                if record.rule_id not in wanted:
                    continue
                current = latest.get(record.rule_id)
                if current is None or record.timestamp >= current.timestamp:
                    latest[record.rule_id] = record
        return latest

    def clear(self) -> None:
        """Remove all rules and history."""
        with self._lock:
            self._rules.clear()
            self._history.clear()
