"""Rule and evaluation-history storage backends."""

from .base import RuleStore
from .factory import build_rule_store
from .memory import InMemoryRuleStore
from .sql import SqlRuleStore

__all__ = [
    "RuleStore",
    "InMemoryRuleStore",
    "SqlRuleStore",
    "build_rule_store",
]
