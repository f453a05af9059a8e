import unittest
from datetime import datetime, timezone

import requests

from app.cache import TTLCache
from app.data_sources.base import StaticGeocoder
from app.errors import LocationError, ProviderHTTPError, RateLimitError, UpstreamError
from app.rate_limiter import RateLimiter
from app.retry import RetryHandler
from app.weather_client import WeatherClient, should_retry_fetch


def _payload(temperature=20.0):
    return {"data": {"time": "2024-06-01T12:00:00Z", "values": {"temperature": temperature, "weatherCode": 1000}}}


class ScriptedResp:
    def __init__(self, status_code=200, payload=None, headers=None):
        self.status_code = status_code
        self._payload = payload
        self.headers = headers or {}
        self.url = "https://api.tomorrow.io/v4/weather/realtime?apikey=k"
        self.reason = ""

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(str(self.status_code), response=self)

    def json(self):
        return self._payload


class ScriptedSession:
    """Returns queued responses (or raises queued exceptions) in order."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []
        self.closed = False

    def get(self, url, params=None, headers=None, timeout=None):
        self.calls.append({"url": url, "params": params})
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def close(self):
        self.closed = True


class TestWeatherClient(unittest.TestCase):
    def _client(self, session, *, max_requests=10, geocoder=None):
        self.sleeps = []
        self.limiter = RateLimiter(max_requests=max_requests, window_seconds=3600)
        self.cache = TTLCache(default_ttl_seconds=600)
        return WeatherClient(
            cache=self.cache,
            rate_limiter=self.limiter,
            retry_handler=RetryHandler(should_retry=should_retry_fetch, sleep=self.sleeps.append),
            geocoder=geocoder or StaticGeocoder({"Paris": "48.8566,2.3522"}),
            session=session,
            api_key="k",
        )

    def test_cache_hit_skips_limiter_and_network(self):
        session = ScriptedSession(ScriptedResp(payload=_payload(12.0)))
        client = self._client(session)
        first = client.get_current_weather("1,2")
        second = client.get_current_weather("1,2")
        self.assertIs(first, second)
        self.assertEqual(len(session.calls), 1)
        self.assertEqual(self.limiter.remaining("weather-api"), 9)

    def test_name_is_resolved_through_geocoder(self):
        session = ScriptedSession(ScriptedResp(payload=_payload()))
        client = self._client(session)
        client.get_current_weather("Paris")
        self.assertEqual(session.calls[0]["params"]["location"], "48.8566,2.3522")

    def test_unresolvable_location_raises_location_error_without_retry(self):
        session = ScriptedSession()
        client = self._client(session)
        with self.assertRaises(LocationError):
            client.get_current_weather("Atlantis")
        self.assertEqual(session.calls, [])
        self.assertEqual(self.sleeps, [])

    def test_limiter_denial_raises_before_network(self):
        session = ScriptedSession(ScriptedResp(payload=_payload()))
        client = self._client(session, max_requests=1)
        client.get_current_weather("1,2")
        with self.assertRaises(RateLimitError) as ctx:
            client.get_current_weather("3,4")
        self.assertEqual(ctx.exception.source, "local")
        self.assertEqual(len(session.calls), 1)

    def test_transient_failures_are_retried_then_cached(self):
        session = ScriptedSession(
            requests.ConnectionError("reset"),
            ScriptedResp(status_code=429, payload={}),
            ScriptedResp(payload=_payload(30.0)),
        )
        client = self._client(session)
        snap = client.get_current_weather("1,2")
        self.assertEqual(snap.temperature, 30.0)
        self.assertEqual(len(session.calls), 3)
        self.assertEqual(self.sleeps, [1.0, 2.0])
        # One admission for the whole retried fetch.
        self.assertEqual(self.limiter.remaining("weather-api"), 9)
        self.assertTrue(self.cache.has("weather:1,2"))

    def test_non_retryable_status_surfaces_upstream_error(self):
        session = ScriptedSession(ScriptedResp(status_code=401, payload={}))
        client = self._client(session)
        with self.assertRaises(UpstreamError) as ctx:
            client.get_current_weather("1,2")
        self.assertEqual(ctx.exception.status_code, 401)
        self.assertEqual(ctx.exception.attempts, 1)
        self.assertIsInstance(ctx.exception.cause, ProviderHTTPError)
        self.assertFalse(self.cache.has("weather:1,2"))

    def test_exhausted_429_surfaces_rate_limit_error(self):
        session = ScriptedSession(*[ScriptedResp(status_code=429, payload={}, headers={"retry-after": "120"})] * 3)
        client = self._client(session)
        before = datetime.now(timezone.utc)
        with self.assertRaises(RateLimitError) as ctx:
            client.get_current_weather("1,2")
        self.assertEqual(ctx.exception.source, "upstream")
        self.assertGreaterEqual((ctx.exception.retry_after - before).total_seconds(), 119)
        self.assertIsInstance(ctx.exception.__cause__, UpstreamError)

    def test_unusable_retry_after_still_surfaces_rate_limit_error(self):
        for header in ("inf", "-inf", "nan", "1e15"):
            with self.subTest(retry_after=header):
                responses = [ScriptedResp(status_code=429, payload={}, headers={"retry-after": header})] * 3
                client = self._client(ScriptedSession(*responses))
                before = datetime.now(timezone.utc)
                with self.assertRaises(RateLimitError) as ctx:
                    client.get_current_weather("1,2")
                self.assertEqual(ctx.exception.source, "upstream")
                wait = (ctx.exception.retry_after - before).total_seconds()
                self.assertGreaterEqual(wait, 0)
                self.assertLessEqual(wait, self.limiter.window_seconds + 1)

    def test_forecast_uses_separate_key_and_ttl(self):
        forecast = {"timelines": {"hourly": []}}
        session = ScriptedSession(ScriptedResp(payload=forecast), ScriptedResp(payload=forecast))
        client = self._client(session)
        client.forecast_ttl_seconds = 900
        client.get_forecast("1,2", "1h")
        client.get_forecast("1,2", "1h")
        client.get_forecast("1,2", "1d")
        self.assertEqual(len(session.calls), 2)
        self.assertTrue(self.cache.has("forecast:1,2:1h"))
        self.assertTrue(self.cache.has("forecast:1,2:1d"))
        self.assertEqual(self.cache._entries["forecast:1,2:1h"].ttl, 900)

    def test_validate_config(self):
        ok_client = self._client(ScriptedSession(ScriptedResp(payload=_payload())))
        self.assertTrue(ok_client.validate_config())
        self.assertEqual(ok_client.cache.size(), 0)
        bad_client = self._client(ScriptedSession(ScriptedResp(status_code=403, payload={})))
        self.assertFalse(bad_client.validate_config())

    def test_rate_limit_status(self):
        client = self._client(ScriptedSession(ScriptedResp(payload=_payload())), max_requests=5)
        client.get_current_weather("1,2")
        status = client.rate_limit_status()
        self.assertEqual(status["remaining_requests"], 4)
        self.assertTrue(status["can_proceed"])


if __name__ == "__main__":
    unittest.main()
