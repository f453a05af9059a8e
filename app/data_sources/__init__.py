"""Provider wire client and location-resolution seam."""

from .base import GeocodingResolver, StaticGeocoder, is_coordinates, resolve_coordinates
from .tomorrow_io_client import (
    WeatherSnapshot,
    describe_weather_code,
    fetch_forecast,
    fetch_realtime,
    parse_realtime_payload,
)

__all__ = [
    "GeocodingResolver",
    "StaticGeocoder",
    "is_coordinates",
    "resolve_coordinates",
    "WeatherSnapshot",
    "describe_weather_code",
    "fetch_forecast",
    "fetch_realtime",
    "parse_realtime_payload",
]
