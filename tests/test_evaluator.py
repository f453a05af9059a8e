import datetime as dt
import threading
import unittest

import requests

from app.cache import TTLCache
from app.data_sources.tomorrow_io_client import WeatherSnapshot
from app.domain import Rule
from app.errors import (
    CycleInProgressError,
    LocationError,
    NotFoundError,
    UnknownOperatorError,
    UnknownParameterError,
)
from app.evaluator import RuleEvaluator, compare, extract_parameter
from app.rate_limiter import RateLimiter
from app.retry import RetryHandler
from app.rule_store.memory import InMemoryRuleStore
from app.weather_client import WeatherClient, should_retry_fetch


def _make_snapshot(**overrides) -> WeatherSnapshot:
    fields = dict(
        temperature=35.0,
        feels_like=37.0,
        humidity=40.0,
        wind_speed=3.0,
        wind_direction=180.0,
        precipitation=0.0,
        pressure=1010.0,
        visibility=10.0,
        uv_index=7.0,
        cloud_cover=10.0,
        weather_code=1000,
        weather_description="Clear",
        observed_at=dt.datetime(2024, 6, 1, 12, tzinfo=dt.timezone.utc),
    )
    fields.update(overrides)
    return WeatherSnapshot(**fields)


def _make_rule(rule_id="r1", **overrides) -> Rule:
    fields = dict(
        id=rule_id,
        name=f"rule {rule_id}",
        location="40.7128,-74.0060",
        parameter="temperature",
        operator="gt",
        threshold=30.0,
        unit="C",
    )
    fields.update(overrides)
    return Rule(**fields)


class FakeWeather:
    """Callable standing in for WeatherClient.get_current_weather."""

    def __init__(self, snapshot=None, failures=None):
        self.snapshot = snapshot or _make_snapshot()
        self.failures = failures or {}
        self.calls = []

    def __call__(self, location):
        self.calls.append(location)
        if location in self.failures:
            raise self.failures[location]
        return self.snapshot


class TestCompare(unittest.TestCase):
    def test_ordering_operators(self):
        self.assertTrue(compare(35, "gt", 30))
        self.assertFalse(compare(30, "gt", 30))
        self.assertTrue(compare(30, "gte", 30))
        self.assertTrue(compare(29.9, "lt", 30))
        self.assertTrue(compare(30, "lte", 30))
        self.assertFalse(compare(30.1, "lte", 30))

    def test_equality_uses_tolerance(self):
        self.assertTrue(compare(30.005, "eq", 30))
        self.assertFalse(compare(30.02, "eq", 30))
        self.assertFalse(compare(30.005, "ne", 30))
        self.assertTrue(compare(30.02, "ne", 30))

    def test_unknown_operator(self):
        with self.assertRaises(UnknownOperatorError) as ctx:
            compare(1, "approx", 1)
        self.assertEqual(ctx.exception.operator, "approx")

    def test_extract_parameter_maps_stored_names(self):
        snap = _make_snapshot()
        self.assertEqual(extract_parameter(snap, "feelsLike"), 37.0)
        self.assertEqual(extract_parameter(snap, "uvIndex"), 7.0)
        self.assertEqual(extract_parameter(snap, "windSpeed"), 3.0)

    def test_extract_unknown_parameter(self):
        with self.assertRaises(UnknownParameterError):
            extract_parameter(_make_snapshot(), "dewPoint")
        with self.assertRaises(UnknownParameterError):
            extract_parameter(_make_snapshot(), "weatherCode")


class TestRunCycle(unittest.TestCase):
    def setUp(self):
        self.store = InMemoryRuleStore()

    def test_cycle_records_successes_only(self):
        self.store.add_rule(_make_rule("hot", threshold=30.0))
        self.store.add_rule(_make_rule("bad", parameter="dewPoint"))
        self.store.add_rule(_make_rule("off", is_active=False))
        weather = FakeWeather()
        evaluator = RuleEvaluator(self.store, weather, max_workers=2)

        results = evaluator.run_cycle()

        by_id = {r.rule_id: r for r in results}
        self.assertEqual(set(by_id), {"hot", "bad"})
        self.assertTrue(by_id["hot"].is_triggered)
        self.assertEqual(by_id["hot"].observed_value, 35.0)
        self.assertFalse(by_id["bad"].succeeded)
        self.assertEqual(by_id["bad"].error_type, "UnknownParameterError")

        history = self.store.history()
        self.assertEqual(len(history), 1)
        record = history[0]
        self.assertEqual(record.rule_id, "hot")
        self.assertTrue(record.is_triggered)
        self.assertEqual(record.observed_value, 35.0)
        self.assertEqual(record.threshold_value, 30.0)

    def test_acquisition_failure_is_contained(self):
        self.store.add_rule(_make_rule("nowhere", location="Atlantis"))
        self.store.add_rule(_make_rule("cold", operator="lt", threshold=0.0))
        weather = FakeWeather(failures={"Atlantis": LocationError("Atlantis")})
        results = RuleEvaluator(self.store, weather).run_cycle()

        by_id = {r.rule_id: r for r in results}
        self.assertEqual(by_id["nowhere"].error_type, "LocationError")
        self.assertFalse(by_id["cold"].is_triggered)
        self.assertEqual([r.rule_id for r in self.store.history()], ["cold"])

    def test_no_active_rules(self):
        evaluator = RuleEvaluator(self.store, FakeWeather())
        self.assertEqual(evaluator.run_cycle(), [])
        self.assertIsNotNone(evaluator.last_cycle_finished_at)

    def test_history_write_failure_is_reported(self):
        class BrokenStore(InMemoryRuleStore):
            def append_evaluation(self, record):
                raise RuntimeError("disk full")

        store = BrokenStore([_make_rule("r1")])
        results = RuleEvaluator(store, FakeWeather()).run_cycle()
        self.assertEqual(len(results), 1)
        self.assertFalse(results[0].succeeded)
        self.assertIn("disk full", results[0].error)

    def test_overlapping_cycles_do_not_duplicate_history(self):
        self.store.add_rule(_make_rule("r1"))
        entered = threading.Event()
        release = threading.Event()

        def blocking_fetch(location):
            entered.set()
            release.wait(timeout=5)
            return _make_snapshot()

        evaluator = RuleEvaluator(self.store, blocking_fetch)
        first_results = []
        worker = threading.Thread(target=lambda: first_results.extend(evaluator.run_cycle()))
        worker.start()
        self.assertTrue(entered.wait(timeout=5))

        self.assertTrue(evaluator.is_running)
        self.assertEqual(evaluator.run_cycle(), [])

        release.set()
        worker.join(timeout=5)
        self.assertEqual(len(first_results), 1)
        self.assertEqual(len(self.store.history("r1")), 1)
        self.assertFalse(evaluator.is_running)

    def test_overlapping_call_can_raise_instead_of_skipping(self):
        self.store.add_rule(_make_rule("r1"))
        evaluator = RuleEvaluator(self.store, FakeWeather())
        evaluator._cycle_lock.acquire()
        try:
            with self.assertRaises(CycleInProgressError):
                evaluator.run_cycle(raise_if_running=True)
            self.assertEqual(evaluator.run_cycle(), [])
        finally:
            evaluator._cycle_lock.release()
        self.assertEqual(self.store.history(), [])


class RoutedResp:
    def __init__(self, status_code, payload):
        self.status_code = status_code
        self._payload = payload
        self.headers = {}
        self.url = "https://api.tomorrow.io/v4/weather/realtime"
        self.reason = ""

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(str(self.status_code), response=self)

    def json(self):
        return self._payload


class RoutedSession:
    """Answers each GET according to the requested `location` parameter."""

    def __init__(self, routes):
        self.routes = routes
        self.calls = []
        self._lock = threading.Lock()

    def get(self, url, params=None, headers=None, timeout=None):
        with self._lock:
            self.calls.append(params["location"])
        return self.routes[params["location"]]


class TestCycleThroughWeatherClient(unittest.TestCase):
    def test_failing_provider_call_and_triggering_rule(self):
        session = RoutedSession(
            {
                "10,10": RoutedResp(502, {"message": "bad gateway"}),
                "40.7128,-74.0060": RoutedResp(
                    200,
                    {"data": {"time": "2024-06-01T12:00:00Z", "values": {"temperature": 35.0}}},
                ),
            }
        )
        client = WeatherClient(
            cache=TTLCache(),
            rate_limiter=RateLimiter(max_requests=10, window_seconds=3600),
            retry_handler=RetryHandler(should_retry=should_retry_fetch, sleep=lambda seconds: None),
            session=session,
            api_key="k",
        )
        store = InMemoryRuleStore(
            [
                _make_rule("broken", location="10,10"),
                _make_rule("hot", location="40.7128,-74.0060", operator="gt", threshold=30.0),
            ]
        )

        with self.assertLogs("app.evaluator", level="ERROR") as logs:
            results = RuleEvaluator(store, client.get_current_weather).run_cycle()

        by_id = {r.rule_id: r for r in results}
        self.assertEqual(len(results), 2)
        self.assertEqual(by_id["broken"].error_type, "UpstreamError")
        self.assertTrue(by_id["hot"].is_triggered)

        history = store.history()
        self.assertEqual(len(history), 1)
        self.assertEqual(history[0].rule_id, "hot")
        self.assertTrue(history[0].is_triggered)
        self.assertEqual(history[0].observed_value, 35.0)
        self.assertEqual([r.rule_id for r in logs.records], ["broken"])


class TestEvaluateOne(unittest.TestCase):
    def setUp(self):
        self.store = InMemoryRuleStore([_make_rule("r1"), _make_rule("inactive", is_active=False)])
        self.evaluator = RuleEvaluator(self.store, FakeWeather())

    def test_unknown_id(self):
        with self.assertRaises(NotFoundError):
            self.evaluator.evaluate_one("missing")

    def test_does_not_record_by_default(self):
        result = self.evaluator.evaluate_one("r1")
        self.assertTrue(result.is_triggered)
        self.assertEqual(self.store.history(), [])

    def test_record_flag_appends_history(self):
        self.evaluator.evaluate_one("r1", record=True)
        self.assertEqual(len(self.store.history("r1")), 1)

    def test_inactive_rule_can_be_evaluated(self):
        result = self.evaluator.evaluate_one("inactive")
        self.assertEqual(result.rule_id, "inactive")

    def test_rule_errors_propagate(self):
        self.store.add_rule(_make_rule("weird", operator="between"))
        with self.assertRaises(UnknownOperatorError):
            self.evaluator.evaluate_one("weird")


class TestCurrentStatus(unittest.TestCase):
    def test_status_reflects_latest_record(self):
        store = InMemoryRuleStore([_make_rule("r1"), _make_rule("r2", threshold=50.0)])
        evaluator = RuleEvaluator(store, FakeWeather())
        evaluator.run_cycle()

        statuses = {s.id: s for s in evaluator.current_status()}
        self.assertTrue(statuses["r1"].is_currently_triggered)
        self.assertFalse(statuses["r2"].is_currently_triggered)
        self.assertEqual(statuses["r2"].last_evaluation.observed_value, 35.0)

    def test_never_evaluated_rule(self):
        store = InMemoryRuleStore([_make_rule("r1")])
        status = RuleEvaluator(store, FakeWeather()).current_status()[0]
        self.assertIsNone(status.last_evaluation)
        self.assertFalse(status.is_currently_triggered)


if __name__ == "__main__":
    unittest.main()
