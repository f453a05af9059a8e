"""Helpers for fetching realtime and forecast weather from the Tomorrow.io v4 API.

These functions make exactly one HTTP request each and raise on any failure;
caching, rate limiting and retries are layered on top by `app.weather_client`.
"""
from __future__ import annotations

import datetime as dt
import math
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

import requests

from app.errors import ProviderHTTPError, ProviderPayloadError
from utils.logging_utils import get_tagged_logger, mask_url_secrets

logger = get_tagged_logger(__name__, tag="tomorrow_io_client")

DEFAULT_BASE_URL = "https://api.tomorrow.io/v4"
REALTIME_PATH = "/weather/realtime"
FORECAST_PATH = "/weather/forecast"

DEFAULT_HEADERS = {
    "Accept": "application/json",
    "Accept-Encoding": "gzip",
}

WEATHER_DESCRIPTIONS: Dict[int, str] = {
    1000: "Clear",
    1001: "Cloudy",
    1100: "Mostly Clear",
    1101: "Partly Cloudy",
    1102: "Mostly Cloudy",
    2000: "Fog",
    2100: "Light Fog",
    4000: "Drizzle",
    4001: "Rain",
    4200: "Light Rain",
    4201: "Heavy Rain",
    5000: "Snow",
    5001: "Flurries",
    5100: "Light Snow",
    5101: "Heavy Snow",
    6000: "Freezing Drizzle",
    6001: "Freezing Rain",
    6200: "Light Freezing Rain",
    6201: "Heavy Freezing Rain",
    7000: "Ice Pellets",
    7101: "Heavy Ice Pellets",
    7102: "Light Ice Pellets",
    8000: "Thunderstorm",
}

# WeatherSnapshot attribute -> Tomorrow.io `values` key
VALUE_FIELDS: Dict[str, str] = {
    "temperature": "temperature",
    "feels_like": "temperatureApparent",
    "humidity": "humidity",
    "wind_speed": "windSpeed",
    "wind_direction": "windDirection",
    "precipitation": "precipitationIntensity",
    "pressure": "pressureSurfaceLevel",
    "visibility": "visibility",
    "uv_index": "uvIndex",
    "cloud_cover": "cloudCover",
}


@dataclass(frozen=True)
class WeatherSnapshot:
    """Normalized realtime observation for one location."""
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
    observed_at: dt.datetime  # timezone-aware

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["observed_at"] = self.observed_at.isoformat()
        return data


def describe_weather_code(code: int) -> str:
    """Human-readable label for a Tomorrow.io weather code; unknown codes map to "Unknown"."""
    return WEATHER_DESCRIPTIONS.get(code, "Unknown")


def _number(values: Dict[str, Any], key: str) -> float:
    """Missing, null or non-numeric values count as 0."""
    raw = values.get(key)
    if raw is None:
        return 0.0
    try:
        return float(raw)
    except (TypeError, ValueError):
        logger.warning(f"Non-numeric provider value for {key}: {raw!r}; defaulting to 0", extra={"field": key, "value": raw})
        return 0.0


def _parse_time(raw: Optional[str]) -> dt.datetime:
    """Parse the provider's ISO-8601 timestamp ("...Z"), falling back to now (UTC)."""
    if not raw:
        return dt.datetime.now(dt.timezone.utc)
    try:
        parsed = dt.datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Unparseable observation time {raw!r}; using now", extra={"time": raw})
        return dt.datetime.now(dt.timezone.utc)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed


def parse_realtime_payload(payload: Any) -> WeatherSnapshot:
    """Convert the `{data: {values, time}}` envelope into a WeatherSnapshot."""
    data = payload.get("data") if isinstance(payload, dict) else None
    values = data.get("values") if isinstance(data, dict) else None
    if not isinstance(values, dict):
        raise ProviderPayloadError("Invalid response format from Tomorrow.io API")

    numbers = {attr: _number(values, key) for attr, key in VALUE_FIELDS.items()}
    code = int(_number(values, "weatherCode"))
    return WeatherSnapshot(
        **numbers,
        weather_code=code,
        weather_description=describe_weather_code(code),
        observed_at=_parse_time(data.get("time")),
    )


def _retry_after_seconds(resp: requests.Response) -> Optional[float]:
    raw = resp.headers.get("retry-after")
    if raw is None:
        return None
    try:
        seconds = float(raw)
    except ValueError:
        return None
    if not math.isfinite(seconds):
        return None
    return max(0.0, seconds)


def _get_json(
    session: requests.Session,
    url: str,
    params: Dict[str, Any],
    *,
    timeout: float,
) -> Any:
    """GET `url` and return its JSON body, raising ProviderHTTPError on non-2xx."""
    resp = session.get(url, params=params, headers=DEFAULT_HEADERS, timeout=timeout)
    try:
        resp.raise_for_status()
    except requests.HTTPError as exc:
        status = resp.status_code
        logger.warning(
            f"Tomorrow.io request failed with HTTP {status}",
            extra={"url": mask_url_secrets(resp.url or url), "status_code": status},
        )
        raise ProviderHTTPError(
            status,
            retry_after_seconds=_retry_after_seconds(resp) if status == 429 else None,
            detail=resp.reason or "",
        ) from exc
    try:
        return resp.json()
    except ValueError as exc:
        raise ProviderPayloadError("Tomorrow.io returned a non-JSON body") from exc


def fetch_realtime(
    session: requests.Session,
    coordinates: str,
    *,
    api_key: str | None,
    base_url: str = DEFAULT_BASE_URL,
    units: str = "metric",
    timeout: float = 15.0,
) -> WeatherSnapshot:
    """Fetch and normalize the current observation at `coordinates` ("lat,lon")."""
    params = {"location": coordinates, "apikey": api_key or "", "units": units}
    payload = _get_json(session, f"{base_url}{REALTIME_PATH}", params, timeout=timeout)
    return parse_realtime_payload(payload)


def fetch_forecast(
    session: requests.Session,
    coordinates: str,
    *,
    timesteps: str = "1h",
    api_key: str | None,
    base_url: str = DEFAULT_BASE_URL,
    units: str = "metric",
    timeout: float = 15.0,
) -> Dict[str, Any]:
    """Fetch the raw forecast payload for `coordinates` at the given granularity ("1h", "1d")."""
    params = {"location": coordinates, "apikey": api_key or "", "units": units, "timesteps": timesteps}
    payload = _get_json(session, f"{base_url}{FORECAST_PATH}", params, timeout=timeout)
    if not isinstance(payload, dict):
        raise ProviderPayloadError("Invalid forecast response format from Tomorrow.io API")
    return payload
