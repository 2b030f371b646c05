"""Tests for BaseCollector and the bundled collectors."""

import threading
import unittest

from ingestflow.backoff import BackoffStrategy
from ingestflow.base import BaseCollector
from ingestflow.collectors import JsonApiCollector, StaticCollector
from ingestflow.errors import ErrorKind, RunCancelled
from ingestflow.metrics import MetricsCollector
from ingestflow.rate_limiter import RateLimiter


class FakeResponse:
    def __init__(self, status_code=200, payload=None, invalid_json=False):
        self.status_code = status_code
        self._payload = payload
        self._invalid_json = invalid_json

    def json(self):
        if self._invalid_json:
            raise ValueError("Expecting value: line 1 column 1")
        return self._payload


class FakeSession:
    """Returns (or raises) queued outcomes in order."""

    def __init__(self, *outcomes):
        self._outcomes = list(outcomes)
        self.calls = []

    def request(self, method, url, params=None, headers=None, timeout=None):
        self.calls.append({"method": method, "url": url, "params": params, "timeout": timeout})
        outcome = self._outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _no_wait_limiter():
    return RateLimiter(6000, 100, sleep=lambda s: None)


def _api(session, **kwargs):
    defaults = dict(
        url="https://example.test/api/listings",
        backoff=BackoffStrategy(cap_ms=0),
        items_path="data.items",
        session=session,
        rate_limiter=_no_wait_limiter(),
    )
    defaults.update(kwargs)
    return JsonApiCollector(**defaults)


class TestBaseCollector(unittest.TestCase):
    """Verify the collect() template method never raises."""

    def test_empty_source_id_is_validation_error(self):
        """validate() failures come back as an unsuccessful result."""
        collector = StaticCollector(items=[])
        result = collector.collect("")
        self.assertFalse(result.success)
        self.assertEqual(result.errors[0].kind, ErrorKind.VALIDATION)

    def test_fetch_exception_is_classified(self):
        """An opaque fetch error is classified by the taxonomy."""

        class Failing(BaseCollector):
            def fetch(self, source_id, params, cancel):
                raise ConnectionError("connection refused")

            def parse(self, source_id, response):
                return []

        result = Failing().collect("a")
        self.assertFalse(result.success)
        self.assertEqual(result.errors[0].kind, ErrorKind.NETWORK)
        self.assertEqual(result.errors[0].context["source_id"], "a")

    def test_parse_exception_is_parsing_error(self):
        """Any parse failure is recorded as PARSING."""

        class BadParse(BaseCollector):
            def fetch(self, source_id, params, cancel):
                return "<html>"

            def parse(self, source_id, response):
                raise KeyError("price")

        result = BadParse().collect("a")
        self.assertEqual(result.errors[0].kind, ErrorKind.PARSING)

    def test_cancellation_propagates(self):
        """A cancelled rate-limiter wait is not swallowed."""
        limiter = RateLimiter(1, 1)
        collector = StaticCollector(items=[{"url": "u1"}], rate_limiter=limiter)
        collector.collect("a")
        cancel = threading.Event()
        cancel.set()
        with self.assertRaises(RunCancelled):
            collector.collect("a", cancel=cancel)

    def test_results_recorded_in_metrics(self):
        """Every collect is recorded, successful or not."""
        metrics = MetricsCollector()
        StaticCollector(items=[{"url": "u1"}], metrics=metrics).collect("a")
        StaticCollector(items=[], metrics=metrics).collect("")
        snap = metrics.snapshot(60)
        self.assertEqual(snap.total_collects, 2)
        self.assertEqual(snap.success_count, 1)
        self.assertEqual(snap.record_count, 1)


class TestStaticCollector(unittest.TestCase):
    def test_items_without_key_are_skipped(self):
        """Items missing the key field never become records."""
        collector = StaticCollector(items=[{"url": "u1", "title": "A"}, {"title": "no key"}, "junk"])
        result = collector.collect("a")
        self.assertTrue(result.success)
        self.assertEqual([r.key for r in result.records], ["u1"])
        self.assertEqual(result.records[0].payload["title"], "A")
        self.assertEqual(result.records[0].source_id, "a")


class TestJsonApiCollector(unittest.TestCase):
    """Verify HTTP status mapping, retries and item extraction."""

    def test_reads_items_at_dotted_path(self):
        """Records come from items_path with keys from key_field."""
        session = FakeSession(FakeResponse(payload={"data": {"items": [{"url": "u1"}, {"url": "u2"}]}}))
        result = _api(session).collect("a", params={"page": 1})
        self.assertTrue(result.success)
        self.assertEqual([r.key for r in result.records], ["u1", "u2"])
        self.assertEqual(session.calls[0]["params"], {"page": 1})

    def test_retryable_status_is_retried(self):
        """A 429 followed by a 200 succeeds on the second attempt."""
        limiter = _no_wait_limiter()
        session = FakeSession(
            FakeResponse(status_code=429),
            FakeResponse(payload={"data": {"items": [{"url": "u1"}]}}),
        )
        result = _api(session, rate_limiter=limiter).collect("a")
        self.assertTrue(result.success)
        self.assertEqual(len(session.calls), 2)
        self.assertEqual(limiter.get_stats().total_requests, 2)

    def test_blocked_after_retries(self):
        """One retry allowed means two requests before the BLOCKED error."""
        session = FakeSession(FakeResponse(status_code=403), FakeResponse(status_code=403))
        result = _api(session, max_retries=1).collect("a")
        self.assertFalse(result.success)
        self.assertEqual(result.errors[0].kind, ErrorKind.BLOCKED)
        self.assertEqual(len(session.calls), 2)

    def test_default_retries_twice(self):
        session = FakeSession(*(FakeResponse(status_code=503) for _ in range(3)))
        result = _api(session).collect("a")
        self.assertEqual(result.errors[0].kind, ErrorKind.NETWORK)
        self.assertEqual(len(session.calls), 3)

    def test_zero_retries_makes_one_request(self):
        session = FakeSession(FakeResponse(status_code=429), FakeResponse(payload={"data": {"items": []}}))
        result = _api(session, max_retries=0).collect("a")
        self.assertFalse(result.success)
        self.assertEqual(len(session.calls), 1)

    def test_authentication_failure_not_retried(self):
        """401 is not retryable, so only one request is made."""
        session = FakeSession(FakeResponse(status_code=401), FakeResponse(status_code=200))
        result = _api(session, max_retries=3).collect("a")
        self.assertEqual(result.errors[0].kind, ErrorKind.AUTHENTICATION)
        self.assertEqual(len(session.calls), 1)

    def test_server_error_is_network(self):
        """5xx responses are network errors."""
        session = FakeSession(FakeResponse(status_code=502))
        result = _api(session, max_retries=0).collect("a")
        self.assertEqual(result.errors[0].kind, ErrorKind.NETWORK)
        self.assertEqual(result.errors[0].context["status_code"], 502)

    def test_invalid_json_is_parsing_error(self):
        """An unreadable body is a PARSING failure."""
        session = FakeSession(FakeResponse(invalid_json=True))
        result = _api(session).collect("a")
        self.assertEqual(result.errors[0].kind, ErrorKind.PARSING)

    def test_non_list_payload_is_parsing_error(self):
        """items_path must point at a list."""
        session = FakeSession(FakeResponse(payload={"data": {"items": {"url": "u1"}}}))
        result = _api(session).collect("a")
        self.assertEqual(result.errors[0].kind, ErrorKind.PARSING)

    def test_missing_url_is_configuration_error(self):
        """A collector without a URL cannot run."""
        result = _api(FakeSession(), url="").collect("a")
        self.assertEqual(result.errors[0].kind, ErrorKind.CONFIGURATION)


if __name__ == "__main__":
    unittest.main()
