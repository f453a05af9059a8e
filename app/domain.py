"""Domain vocabulary and schemas for threshold rules and their evaluations.

Rules are owned by an external CRUD layer and arrive here read-only. Their
`parameter` and `operator` stay plain strings on purpose: a rule that names
an unsupported field or operator must still load, so that it fails on its own
during evaluation instead of breaking the load of every other rule.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _StrictBaseModel(BaseModel):
    """Base model with strict extra handling."""

    model_config = ConfigDict(extra="forbid")


class WeatherParameter(str, Enum):
    """Measurable WeatherSnapshot fields a rule may monitor (stored names)."""
    TEMPERATURE = "temperature"
    FEELS_LIKE = "feelsLike"
    HUMIDITY = "humidity"
    WIND_SPEED = "windSpeed"
    WIND_DIRECTION = "windDirection"
    PRECIPITATION = "precipitation"
    PRESSURE = "pressure"
    VISIBILITY = "visibility"
    UV_INDEX = "uvIndex"
    CLOUD_COVER = "cloudCover"

    @property
    def snapshot_field(self) -> str:
        """Attribute name on WeatherSnapshot."""
        return SNAPSHOT_FIELDS[self]


SNAPSHOT_FIELDS: Dict[WeatherParameter, str] = {
    WeatherParameter.TEMPERATURE: "temperature",
    WeatherParameter.FEELS_LIKE: "feels_like",
    WeatherParameter.HUMIDITY: "humidity",
    WeatherParameter.WIND_SPEED: "wind_speed",
    WeatherParameter.WIND_DIRECTION: "wind_direction",
    WeatherParameter.PRECIPITATION: "precipitation",
    WeatherParameter.PRESSURE: "pressure",
    WeatherParameter.VISIBILITY: "visibility",
    WeatherParameter.UV_INDEX: "uv_index",
    WeatherParameter.CLOUD_COVER: "cloud_cover",
}


class ComparisonOperator(str, Enum):
    """How an observed value is compared with a rule threshold."""
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    EQ = "eq"
    NE = "ne"


class Rule(_StrictBaseModel):
    """A user-defined threshold condition over one weather parameter at one location."""
    id: str
    name: str
    location: str = Field(description='Coordinates ("lat,lon") or a known location name')
    location_name: Optional[str] = None
    parameter: str
    operator: str
    threshold: float
    unit: str = ""
    description: Optional[str] = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class EvaluationRecord(_StrictBaseModel):
    """One append-only history row: the outcome of evaluating a rule once."""
    model_config = ConfigDict(extra="forbid", frozen=True)

    rule_id: str
    is_triggered: bool
    observed_value: float
    threshold_value: float
    timestamp: datetime = Field(default_factory=_utcnow)


class EvaluationResult(_StrictBaseModel):
    """Per-rule result of a cycle or an on-demand evaluation.

    Failed evaluations carry `error`/`error_type` and no observed value; they
    are returned to the caller but never written to history.
    """
    rule_id: str
    rule_name: str
    location: str
    parameter: str
    operator: str
    threshold: float
    observed_value: Optional[float] = None
    is_triggered: Optional[bool] = None
    evaluated_at: datetime = Field(default_factory=_utcnow)
    error: Optional[str] = None
    error_type: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    def to_record(self) -> EvaluationRecord:
        """History row for a successful evaluation."""
        if not self.succeeded or self.observed_value is None or self.is_triggered is None:
            raise ValueError(f"Evaluation of rule {self.rule_id} failed; nothing to record")
        return EvaluationRecord(
            rule_id=self.rule_id,
            is_triggered=self.is_triggered,
            observed_value=self.observed_value,
            threshold_value=self.threshold,
            timestamp=self.evaluated_at,
        )


class RuleStatus(_StrictBaseModel):
    """An active rule alongside its most recent evaluation."""
    id: str
    name: str
    location: str
    parameter: str
    operator: str
    threshold: float
    unit: str
    is_active: bool
    last_evaluation: Optional[EvaluationRecord] = None
    is_currently_triggered: bool = False
