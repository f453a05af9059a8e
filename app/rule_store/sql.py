"""SQL-backed rule store over the `alerts` / `alert_history` tables.

Column names follow the schema owned by the rule-management service
(camelCase, e.g. "isActive", "alertId"). This module only reads `alerts`
and appends to `alert_history`.
"""

from __future__ import annotations

import datetime as dt
import uuid
from typing import Dict, Iterable, List, Mapping, Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    MetaData,
    String,
    Table,
    create_engine,
    func,
    select,
)
from sqlalchemy.engine import Engine

from app.domain import EvaluationRecord, Rule
from app.rule_store.base import RuleStore
from utils.logging_utils import get_tagged_logger, mask_url_secrets

logger = get_tagged_logger(__name__, tag="rule_store/sql_rule_store")

metadata = MetaData()

alerts = Table(
    "alerts",
    metadata,
    Column("id", String, primary_key=True),
    Column("name", String, nullable=False),
    Column("location", String, nullable=False),
    Column("locationName", String, nullable=False, default=""),
    Column("parameter", String, nullable=False),
    Column("operator", String, nullable=False),
    Column("threshold", Float, nullable=False),
    Column("unit", String, nullable=False, default=""),
    Column("description", String),
    Column("isActive", Boolean, nullable=False, default=True),
    Column("createdAt", DateTime(timezone=True), nullable=False),
    Column("updatedAt", DateTime(timezone=True), nullable=False),
)

alert_history = Table(
    "alert_history",
    metadata,
    Column("id", String, primary_key=True),
    Column("alertId", String, ForeignKey("alerts.id"), nullable=False),
    Column("isTriggered", Boolean, nullable=False),
    Column("currentValue", Float),
    Column("thresholdValue", Float, nullable=False),
    Column("timestamp", DateTime(timezone=True), nullable=False),
)


def _aware(ts: dt.datetime | None) -> dt.datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if ts is not None and ts.tzinfo is None:
        return ts.replace(tzinfo=dt.timezone.utc)
    return ts


class SqlRuleStore(RuleStore):
    """Read rules and append history through a SQLAlchemy engine."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    @classmethod
    def from_url(cls, database_url: str, **engine_kwargs) -> "SqlRuleStore":
        """Create an engine from a URL and build the store."""
        logger.info("Connecting rule store", extra={"db_url": mask_url_secrets(database_url)})
        engine = create_engine(database_url, future=True, **engine_kwargs)
        return cls(engine)

    def create_schema(self) -> None:
        """Create the tables if missing (local SQLite and tests)."""
        metadata.create_all(self.engine)

    @staticmethod
    def _row_to_rule(row: Mapping) -> Rule:
        return Rule(
            id=row["id"],
            name=row["name"],
            location=row["location"],
            location_name=row["locationName"] or None,
            parameter=row["parameter"],
            operator=row["operator"],
            threshold=row["threshold"],
            unit=row["unit"] or "",
            description=row["description"],
            is_active=bool(row["isActive"]),
            created_at=_aware(row["createdAt"]),
            updated_at=_aware(row["updatedAt"]),
        )

    @staticmethod
    def _row_to_record(row: Mapping) -> EvaluationRecord:
        return EvaluationRecord(
            rule_id=row["alertId"],
            is_triggered=bool(row["isTriggered"]),
            observed_value=row["currentValue"] if row["currentValue"] is not None else 0.0,
            threshold_value=row["thresholdValue"],
            timestamp=_aware(row["timestamp"]),
        )

    def add_rule(self, rule: Rule) -> None:
        """Insert a rule row (dev/test seeding only)."""
        with self.engine.begin() as conn:
            conn.execute(
                alerts.insert().values(
                    id=rule.id,
                    name=rule.name,
                    location=rule.location,
                    locationName=rule.location_name or "",
                    parameter=rule.parameter,
                    operator=rule.operator,
                    threshold=rule.threshold,
                    unit=rule.unit,
                    description=rule.description,
                    isActive=rule.is_active,
                    createdAt=rule.created_at,
                    updatedAt=rule.updated_at,
                )
            )

    def list_active_rules(self) -> List[Rule]:
        stmt = select(alerts).where(alerts.c.isActive.is_(True)).order_by(alerts.c.createdAt)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [self._row_to_rule(row) for row in rows]

    def get_rule(self, rule_id: str) -> Optional[Rule]:
        stmt = select(alerts).where(alerts.c.id == rule_id)
        with self.engine.connect() as conn:
            row = conn.execute(stmt).mappings().first()
        return self._row_to_rule(row) if row else None

    def append_evaluation(self, record: EvaluationRecord) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                alert_history.insert().values(
                    id=str(uuid.uuid4()),
                    alertId=record.rule_id,
                    isTriggered=record.is_triggered,
                    currentValue=record.observed_value,
                    thresholdValue=record.threshold_value,
                    timestamp=record.timestamp,
                )
            )

    def history(self, rule_id: str) -> List[EvaluationRecord]:
        """Return a rule's history rows, oldest first."""
        stmt = (
            select(alert_history)
            .where(alert_history.c.alertId == rule_id)
            .order_by(alert_history.c.timestamp)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [self._row_to_record(row) for row in rows]

    def latest_evaluations(self, rule_ids: Iterable[str]) -> Dict[str, EvaluationRecord]:
        ids = list(rule_ids)
        if not ids:
            return {}
        newest = (
            select(alert_history.c.alertId, func.max(alert_history.c.timestamp).label("latest"))
            .where(alert_history.c.alertId.in_(ids))
            .group_by(alert_history.c.alertId)
            .subquery()
        )
        stmt = select(alert_history).join(
            newest,
            (alert_history.c.alertId == newest.c.alertId) & (alert_history.c.timestamp == newest.c.latest),
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).mappings().all()
        return {row["alertId"]: self._row_to_record(row) for row in rows}
