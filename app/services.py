"""Process-level wiring: build shared instances once, start and stop them together."""

from __future__ import annotations

from dataclasses import dataclass

import requests

from app import config
from app.cache import TTLCache
from app.data_sources.base import GeocodingResolver, StaticGeocoder
from app.evaluator import RuleEvaluator
from app.rate_limiter import RateLimiter
from app.retry import RetryHandler
from app.rule_store import RuleStore, build_rule_store
from app.scheduler import EvaluationScheduler
from app.weather_client import WeatherClient, should_retry_fetch
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="services")


@dataclass
class Services:
    """Everything a running process shares: one cache, one limiter, one scheduler."""
    settings: config.Settings
    cache: TTLCache
    rate_limiter: RateLimiter
    retry_handler: RetryHandler
    weather_client: WeatherClient
    rule_store: RuleStore
    evaluator: RuleEvaluator
    scheduler: EvaluationScheduler

    def start(self) -> None:
        self.scheduler.start()

    def shutdown(self) -> None:
        """Stop scheduling, let in-flight jobs finish, and release HTTP connections."""
        self.scheduler.shutdown(wait=True)
        self.weather_client.session.close()
        logger.info("Services shut down")


def build_services(
    settings: config.Settings | None = None,
    *,
    rule_store: RuleStore | None = None,
    geocoder: GeocodingResolver | None = None,
    session: requests.Session | None = None,
) -> Services:
    """Construct the acquisition pipeline, evaluator and scheduler from settings."""
    settings = settings or config.settings

    cache = TTLCache(default_ttl_seconds=settings.cache_default_ttl_seconds)
    rate_limiter = RateLimiter(
        max_requests=settings.rate_limit_max_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )
    retry_handler = RetryHandler(
        max_attempts=settings.retry_max_attempts,
        base_delay=settings.retry_base_delay_seconds,
        max_delay=settings.retry_max_delay_seconds,
        backoff_multiplier=settings.retry_backoff_multiplier,
        should_retry=should_retry_fetch,
    )
    weather_client = WeatherClient.from_settings(
        settings,
        cache=cache,
        rate_limiter=rate_limiter,
        retry_handler=retry_handler,
        geocoder=geocoder or StaticGeocoder(settings.known_locations),
        session=session,
    )
    store = rule_store if rule_store is not None else build_rule_store(settings)
    evaluator = RuleEvaluator(
        store,
        weather_client.get_current_weather,
        max_workers=settings.evaluation_max_workers,
    )
    scheduler = EvaluationScheduler(
        evaluator,
        cache=cache,
        rate_limiter=rate_limiter,
        evaluation_interval_seconds=settings.evaluation_interval_seconds,
        cache_cleanup_interval_seconds=settings.cache_cleanup_interval_seconds,
        rate_limit_cleanup_interval_seconds=settings.rate_limit_cleanup_interval_seconds,
        evaluation_enabled=settings.evaluation_enabled,
    )
    logger.info(
        "Services built",
        extra={
            "rule_store": type(store).__name__,
            "rate_limit": f"{settings.rate_limit_max_requests}/{settings.rate_limit_window_seconds:g}s",
        },
    )
    return Services(
        settings=settings,
        cache=cache,
        rate_limiter=rate_limiter,
        retry_handler=retry_handler,
        weather_client=weather_client,
        rule_store=store,
        evaluator=evaluator,
        scheduler=scheduler,
    )
