"""Error vocabulary shared by the acquisition pipeline and the rule evaluator.

Two layers live here:

- wire-level errors (`ProviderHTTPError`, `ProviderPayloadError`) raised from
  inside a single upstream attempt and classified by the retry handler;
- caller-facing errors (`LocationError`, `RateLimitError`, `UpstreamError`,
  `UnknownParameterError`, `UnknownOperatorError`, `NotFoundError`,
  `CycleInProgressError`) that the
  weather client and evaluator raise to their callers.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional


class WeatherServiceError(Exception):
    """Base class for every caller-facing error in this package."""


class LocationError(WeatherServiceError):
    """Location string could not be resolved to coordinates."""

    def __init__(self, location: str) -> None:
        self.location = location
        super().__init__(
            f'Location "{location}" not supported. Use coordinates (lat,lon) or a known location name.'
        )


class RateLimitError(WeatherServiceError):
    """Admission denied, either by the local limiter or by the provider (HTTP 429)."""

    def __init__(self, retry_after: datetime, *, source: str = "local") -> None:
        self.retry_after = retry_after
        self.source = source
        super().__init__(f"Rate limit exceeded ({source}); retry after {retry_after.isoformat()}")


class UpstreamError(WeatherServiceError):
    """Provider call failed after exhausting retries or on a non-retryable status."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        attempts: int = 0,
        cause: Optional[BaseException] = None,
    ) -> None:
        self.status_code = status_code
        self.attempts = attempts
        self.cause = cause
        super().__init__(message)


class UnknownParameterError(WeatherServiceError):
    """Rule references a field that WeatherSnapshot does not carry."""

    def __init__(self, parameter: str) -> None:
        self.parameter = parameter
        super().__init__(f"Unknown weather parameter: {parameter}")


class UnknownOperatorError(WeatherServiceError):
    """Rule uses a comparison operator outside gt/gte/lt/lte/eq/ne."""

    def __init__(self, operator: str) -> None:
        self.operator = operator
        super().__init__(f"Unknown operator: {operator}")


class NotFoundError(WeatherServiceError):
    """Rule id does not exist in the rule store."""

    def __init__(self, rule_id: str) -> None:
        self.rule_id = rule_id
        super().__init__(f"Rule with ID {rule_id} not found")


class CycleInProgressError(WeatherServiceError):
    """An evaluation cycle was requested while another one is still running."""

    def __init__(self) -> None:
        super().__init__("Evaluation cycle already running")


class ProviderHTTPError(Exception):
    """Non-2xx response from the provider, carrying its numeric status."""

    def __init__(self, status_code: int, *, retry_after_seconds: Optional[float] = None, detail: str = "") -> None:
        self.status_code = status_code
        self.retry_after_seconds = retry_after_seconds
        message = f"Provider responded with HTTP {status_code}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class ProviderPayloadError(Exception):
    """Provider answered 2xx but the body is not the expected envelope."""
