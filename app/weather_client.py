"""Rate-limited, cached, retrying access to the upstream weather provider.

Every call goes through the same pipeline:

    cache lookup -> (miss) rate-limit admission -> retried fetch -> cache store

A cache hit never touches the limiter or the network. A limiter denial raises
`RateLimitError` before any request is made and does not count as an attempt.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, TypeVar

import requests

from app.cache import TTLCache, make_key
from app.config import Settings
from app.data_sources.base import GeocodingResolver, StaticGeocoder, resolve_coordinates
from app.data_sources.tomorrow_io_client import (
    DEFAULT_BASE_URL,
    WeatherSnapshot,
    fetch_forecast,
    fetch_realtime,
)
from app.errors import LocationError, RateLimitError, UpstreamError
from app.rate_limiter import RateLimiter
from app.retry import RetryHandler, RetryOutcome, is_retryable
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="weather_client")

T = TypeVar("T")

DEFAULT_RATE_LIMIT_KEY = "weather-api"


def should_retry_fetch(exc: BaseException) -> bool:
    """Status-based classification, plus: an unresolvable location will not resolve on retry."""
    if isinstance(exc, LocationError):
        return False
    return is_retryable(exc)


class WeatherClient:
    """Single entry point for realtime and forecast data from the provider."""

    def __init__(
        self,
        *,
        cache: TTLCache,
        rate_limiter: RateLimiter,
        retry_handler: RetryHandler,
        geocoder: GeocodingResolver | None = None,
        session: requests.Session | None = None,
        api_key: str | None = None,
        base_url: str = DEFAULT_BASE_URL,
        units: str = "metric",
        timeout_seconds: float = 15.0,
        rate_limit_key: str = DEFAULT_RATE_LIMIT_KEY,
        current_ttl_seconds: float = 180.0,
        forecast_ttl_seconds: float = 600.0,
    ) -> None:
        self.cache = cache
        self.rate_limiter = rate_limiter
        self.retry_handler = retry_handler
        self.geocoder = geocoder or StaticGeocoder()
        self.session = session or requests.Session()
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.units = units
        self.timeout_seconds = timeout_seconds
        self.rate_limit_key = rate_limit_key
        self.current_ttl_seconds = current_ttl_seconds
        self.forecast_ttl_seconds = forecast_ttl_seconds
        if not api_key:
            logger.warning("No Tomorrow.io API key configured; upstream calls will be rejected")

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        cache: TTLCache,
        rate_limiter: RateLimiter,
        retry_handler: RetryHandler,
        geocoder: GeocodingResolver | None = None,
        session: requests.Session | None = None,
    ) -> "WeatherClient":
        """Build a client wired to shared cache/limiter/retry instances."""
        return cls(
            cache=cache,
            rate_limiter=rate_limiter,
            retry_handler=retry_handler,
            geocoder=geocoder or StaticGeocoder(settings.known_locations),
            session=session,
            api_key=settings.tomorrow_api_key,
            base_url=settings.tomorrow_base_url,
            units=settings.units,
            timeout_seconds=settings.request_timeout_seconds,
            rate_limit_key=settings.rate_limit_key,
            current_ttl_seconds=settings.current_cache_ttl_seconds,
            forecast_ttl_seconds=settings.forecast_cache_ttl_seconds,
        )

    def get_current_weather(self, location: str) -> WeatherSnapshot:
        """Return the current observation for a "lat,lon" pair or a known location name."""
        location = location.strip()
        cache_key = make_key("weather", location)
        return self._acquire(
            cache_key,
            lambda: fetch_realtime(
                self.session,
                resolve_coordinates(location, self.geocoder),
                api_key=self.api_key,
                base_url=self.base_url,
                units=self.units,
                timeout=self.timeout_seconds,
            ),
            ttl_seconds=self.current_ttl_seconds,
            context={"location": location, "kind": "realtime"},
        )

    def get_forecast(self, location: str, timesteps: str = "1h") -> Dict[str, Any]:
        """Return the raw forecast payload; cached per (location, timesteps) for longer than realtime data."""
        location = location.strip()
        cache_key = make_key("forecast", location, timesteps)
        return self._acquire(
            cache_key,
            lambda: fetch_forecast(
                self.session,
                resolve_coordinates(location, self.geocoder),
                timesteps=timesteps,
                api_key=self.api_key,
                base_url=self.base_url,
                units=self.units,
                timeout=self.timeout_seconds,
            ),
            ttl_seconds=self.forecast_ttl_seconds,
            context={"location": location, "kind": "forecast", "timesteps": timesteps},
        )

    def rate_limit_status(self) -> dict:
        """Limiter introspection for the shared provider key."""
        return self.rate_limiter.status(self.rate_limit_key)

    def validate_config(self, location: str = "40.7128,-74.0060") -> bool:
        """Make one uncached realtime call to check the API key and base URL."""
        try:
            self._fetch_uncached(
                lambda: fetch_realtime(
                    self.session,
                    location,
                    api_key=self.api_key,
                    base_url=self.base_url,
                    units=self.units,
                    timeout=self.timeout_seconds,
                ),
                context={"location": location, "kind": "validate"},
            )
        except (RateLimitError, UpstreamError) as exc:
            logger.error(f"Tomorrow.io configuration check failed: {exc}", extra={"error": str(exc)})
            return False
        return True

    def _acquire(
        self,
        cache_key: str,
        operation: Callable[[], T],
        *,
        ttl_seconds: float,
        context: Dict[str, Any],
    ) -> T:
        cached = self.cache.get(cache_key)
        if cached is not None:
            logger.debug("Cache hit", extra={"cache_key": cache_key})
            return cached

        logger.debug("Cache miss", extra={"cache_key": cache_key})
        value = self._fetch_uncached(operation, context=context)
        self.cache.set(cache_key, value, ttl_seconds)
        return value

    def _fetch_uncached(self, operation: Callable[[], T], *, context: Dict[str, Any]) -> T:
        decision = self.rate_limiter.can_proceed(self.rate_limit_key)
        if not decision.allowed:
            raise RateLimitError(decision.retry_after, source="local")

        outcome: RetryOutcome[T] = self.retry_handler.execute(operation)
        if outcome.succeeded:
            return outcome.value
        raise self._terminal_error(outcome, context)

    def _terminal_error(self, outcome: RetryOutcome, context: Dict[str, Any]) -> Exception:
        """Map a failed RetryOutcome onto the caller-facing error."""
        error = outcome.error
        if isinstance(error, LocationError):
            return error

        status = getattr(error, "status_code", None)
        logger.error(
            f"Upstream weather request failed for {context.get('location')} "
            f"after {outcome.attempts} attempt(s) (status {status}): {error}",
            extra={**context, "attempts": outcome.attempts, "status_code": status, "error": str(error)},
        )
        upstream = UpstreamError(
            f"Weather provider request failed after {outcome.attempts} attempt(s): {error}",
            status_code=status,
            attempts=outcome.attempts,
            cause=error,
        )
        upstream.__cause__ = error
        if status == 429:
            # Capped at the local limiter window.
            wait = min(getattr(error, "retry_after_seconds", None) or 0.0, self.rate_limiter.window_seconds)
            limited = RateLimitError(_utcnow() + timedelta(seconds=wait), source="upstream")
            limited.__cause__ = upstream
            return limited
        return upstream


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)
