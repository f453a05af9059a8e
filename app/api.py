"""HTTP API exposing the acquisition pipeline and the rule evaluator."""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from app.domain import EvaluationResult, RuleStatus
from app.errors import (
    CycleInProgressError,
    LocationError,
    NotFoundError,
    RateLimitError,
    UnknownOperatorError,
    UnknownParameterError,
    UpstreamError,
    WeatherServiceError,
)
from app.services import Services
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="app/api")

router = APIRouter()


class WeatherResponse(BaseModel):
    """Current conditions for one location."""
    location: str
    temperature: float
    feels_like: float
    humidity: float
    wind_speed: float
    wind_direction: float
    precipitation: float
    pressure: float
    visibility: float
    uv_index: float
    cloud_cover: float
    weather_code: int
    weather_description: str
    observed_at: datetime


class RateLimitStatusResponse(BaseModel):
    """Limiter state for the shared provider key."""
    key: str
    remaining_requests: int
    reset_time: Optional[datetime] = None
    can_proceed: bool


class CycleResponse(BaseModel):
    """Outcome of a manually triggered evaluation cycle."""
    evaluated: int
    failed: int
    triggered: int
    results: List[EvaluationResult]


def get_services(request: Request) -> Services:
    """Return the process-wide services built in the app lifespan."""
    return request.app.state.services


def error_response(exc: WeatherServiceError) -> JSONResponse:
    """Map a domain error onto an HTTP status and JSON body."""
    body: Dict[str, Any] = {"detail": str(exc), "error": type(exc).__name__}
    headers: Dict[str, str] = {}

    if isinstance(exc, RateLimitError):
        code = status.HTTP_429_TOO_MANY_REQUESTS
        wait = (exc.retry_after - datetime.now(timezone.utc)).total_seconds()
        headers["Retry-After"] = str(max(1, int(wait + 0.999)))
        body["retry_after"] = exc.retry_after.isoformat()
    elif isinstance(exc, (LocationError, UnknownParameterError, UnknownOperatorError)):
        code = status.HTTP_400_BAD_REQUEST
    elif isinstance(exc, NotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, CycleInProgressError):
        code = status.HTTP_409_CONFLICT
    elif isinstance(exc, UpstreamError):
        code = status.HTTP_502_BAD_GATEWAY
        body["upstream_status"] = exc.status_code
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return JSONResponse(status_code=code, content=body, headers=headers)


@router.get("/weather", response_model=WeatherResponse)
def get_weather(
    location: str = Query(..., min_length=1, description='City name or coordinates ("lat,lon")'),
    services: Services = Depends(get_services),
):
    """Current weather, served from cache when fresh."""
    logger.info("Fetching current weather", extra={"location": location})
    snapshot = services.weather_client.get_current_weather(location)
    return WeatherResponse(location=location, **snapshot.to_dict())


@router.get("/weather/forecast")
def get_forecast(
    location: str = Query(..., min_length=1),
    timesteps: str = Query("1h", pattern=r"^\d+[mhd]$"),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """Raw provider forecast payload at the requested granularity."""
    return services.weather_client.get_forecast(location, timesteps)


@router.get("/weather/rate-limit", response_model=RateLimitStatusResponse)
def get_rate_limit(services: Services = Depends(get_services)):
    """Remaining provider calls in the current window."""
    client = services.weather_client
    return RateLimitStatusResponse(key=client.rate_limit_key, **client.rate_limit_status())


@router.get("/rules/status", response_model=List[RuleStatus])
def get_rule_status(services: Services = Depends(get_services)):
    """Active rules with their latest evaluation."""
    return services.evaluator.current_status()


@router.post("/rules/{rule_id}/evaluate", response_model=EvaluationResult)
def evaluate_rule(
    rule_id: str,
    record: bool = Query(False, description="Append the result to the rule's history"),
    services: Services = Depends(get_services),
):
    """Evaluate one rule now, outside the scheduled cycle."""
    return services.evaluator.evaluate_one(rule_id, record=record)


@router.post("/evaluations/run", response_model=CycleResponse)
def run_evaluation_cycle(services: Services = Depends(get_services)):
    """Run a full evaluation cycle now; 409 if one is already in progress."""
    results = services.evaluator.run_cycle(raise_if_running=True)
    return CycleResponse(
        evaluated=len(results),
        failed=sum(1 for r in results if not r.succeeded),
        triggered=sum(1 for r in results if r.is_triggered),
        results=results,
    )
