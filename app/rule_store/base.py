"""Shared protocol for rule/history storage backends."""

from typing import Dict, Iterable, List, Optional, Protocol

from app.domain import EvaluationRecord, Rule


class RuleStore(Protocol):
    """Read rules, append evaluation history. Rule editing lives elsewhere."""

    def list_active_rules(self) -> List[Rule]:
        """Return every rule with is_active=True."""

    def get_rule(self, rule_id: str) -> Optional[Rule]:
        """Return a rule by id (active or not), or None if absent."""

    def append_evaluation(self, record: EvaluationRecord) -> None:
        """Append one history row."""

    def latest_evaluations(self, rule_ids: Iterable[str]) -> Dict[str, EvaluationRecord]:
        """Return the newest history row per rule id, omitting rules never evaluated."""
