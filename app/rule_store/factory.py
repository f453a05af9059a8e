"""Factory helpers for choosing a rule store at startup."""

from __future__ import annotations

from app import config
from app.rule_store.base import RuleStore
from app.rule_store.memory import InMemoryRuleStore
from utils.logging_utils import get_tagged_logger, mask_url_secrets

logger = get_tagged_logger(__name__, tag="rule_store/factory")


DEFAULT_STORE_NAME = "memory"


def build_rule_store(settings: config.Settings | None = None) -> RuleStore:
    """Instantiate the configured rule store."""
    settings = settings or config.settings
    store = (settings.rule_store or DEFAULT_STORE_NAME).lower()

    if store == "memory":
        logger.info("Using in-memory rule store")
        return InMemoryRuleStore()

    if store == "sql":
        from .sql import SqlRuleStore

        db_url = settings.rule_database_url
        if not db_url:
            raise ValueError("rule_database_url must be set for the SQL rule store")
        logger.info("Using SQL rule store", extra={"db_url": mask_url_secrets(db_url)})
        sql_store = SqlRuleStore.from_url(db_url)
        if db_url.startswith("sqlite"):
            # Local dev databases have no migration step of their own.
            sql_store.create_schema()
        return sql_store

    raise ValueError(f"Unknown rule store '{store}'")
