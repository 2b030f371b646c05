"""Tests for the ProcessingPipeline orchestrator."""

import random
import threading
import unittest

from ingestflow.backoff import BackoffStrategy
from ingestflow.base import BaseCollector
from ingestflow.collectors import StaticCollector
from ingestflow.config import PipelineConfig, SourceConfig
from ingestflow.errors import ErrorKind, ErrorTracker, PipelineError
from ingestflow.metrics import MetricsCollector
from ingestflow.models import CandidateRecord, TranslatedRecord, TranslationStatus
from ingestflow.pipeline import ProcessingPipeline
from ingestflow.storage import MemoryStore
from ingestflow.translation import PassthroughTranslator, TranslatorBase


class RaisingCollector(BaseCollector):
    """A collector that breaks its own never-raise contract."""

    def collect(self, source_id, params=None, cancel=None):
        raise RuntimeError("collector exploded")

    def fetch(self, source_id, params, cancel):
        return []

    def parse(self, source_id, response):
        return []


class UnreachableCollector(BaseCollector):
    def fetch(self, source_id, params, cancel):
        raise ConnectionError("connection refused")

    def parse(self, source_id, response):
        return []


class FailingTranslator(TranslatorBase):
    """Fails the first ``failures`` batches, then passes records through."""

    def __init__(self, failures=10**6, fail_initialize=False, fail_cleanup=False):
        self.failures = failures
        self.calls = 0
        self.fail_initialize = fail_initialize
        self.fail_cleanup = fail_cleanup

    def initialize(self):
        if self.fail_initialize:
            raise RuntimeError("provider offline")

    def translate_batch(self, records):
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError("quota exhausted")
        return [TranslatedRecord(record=r, fields=dict(r.payload), status=TranslationStatus.COMPLETE) for r in records]

    def get_cache_stats(self):
        return {}

    def cleanup(self):
        if self.fail_cleanup:
            raise RuntimeError("cleanup failed")


class FlakyStore(MemoryStore):
    def __init__(self, bad_keys=(), lookup_fails=False):
        super().__init__()
        self.bad_keys = set(bad_keys)
        self.lookup_fails = lookup_fails

    def find_by_key(self, key):
        if self.lookup_fails:
            raise RuntimeError("database connection lost")
        return super().find_by_key(key)

    def upsert(self, record):
        if record.key in self.bad_keys:
            raise RuntimeError("write rejected")
        return super().upsert(record)


def _items(*keys):
    return [{"url": key, "title": f"title {key}"} for key in keys]


def _seed(store, key, source_id="a"):
    candidate = CandidateRecord(key=key, source_id=source_id, payload={"url": key})
    store.upsert(TranslatedRecord(record=candidate, fields={}, status=TranslationStatus.COMPLETE))


def _pipeline(collectors, translator=None, store=None, cancel=None, tracker=None, metrics=None, **config):
    sources = {sid: SourceConfig(source_id=sid, collector="static") for sid in collectors}
    return ProcessingPipeline(
        PipelineConfig(**config),
        sources,
        collectors,
        translator or PassthroughTranslator(),
        store if store is not None else MemoryStore(),
        metrics=metrics,
        cancel=cancel,
        tracker=tracker,
        backoff=BackoffStrategy(rng=random.Random(0)),
    )


class TestProcessAllSites(unittest.TestCase):
    """Verify fan-out across sources and result aggregation."""

    def test_failing_source_does_not_affect_others(self):
        """A throwing collector fails its own source only."""
        metrics = MetricsCollector()
        pipeline = _pipeline(
            {"a": RaisingCollector(), "b": StaticCollector(items=_items("u1", "u2", "u3"), metrics=metrics)},
            metrics=metrics,
        )
        result = pipeline.process_all_sites()

        self.assertFalse(result.success)
        self.assertEqual(list(result.site_results), ["a", "b"])
        self.assertEqual(result.site_results["b"].stored, 3)
        self.assertEqual(result.site_results["b"].errors, [])
        failed = result.site_results["a"].errors
        self.assertEqual(len(failed), 1)
        self.assertEqual(failed[0].kind, ErrorKind.SITE_PROCESSING)
        self.assertEqual(failed[0].cause.kind, ErrorKind.SCRAPING)
        self.assertEqual(result.total_processed, 3)
        self.assertEqual(result.new_records, 3)
        self.assertEqual(result.stored_records, 3)
        self.assertEqual(metrics.snapshot(60).total_collects, 2)

    def test_all_clean_is_success(self):
        """A run with no errors reports success and summed counts."""
        pipeline = _pipeline(
            {"a": StaticCollector(items=_items("u1")), "b": StaticCollector(items=_items("u2", "u3"))}
        )
        result = pipeline.process_all_sites()
        self.assertTrue(result.success)
        self.assertEqual(result.total_processed, 3)
        self.assertEqual(result.translated_records, 3)

    def test_cancelled_before_start(self):
        """A set cancel event stops sources from starting."""
        cancel = threading.Event()
        cancel.set()
        store = MemoryStore()
        pipeline = _pipeline({"a": StaticCollector(items=_items("u1"))}, store=store, cancel=cancel)
        result = pipeline.process_all_sites()
        self.assertFalse(result.success)
        self.assertEqual(result.site_results["a"].errors[0].message, "cancelled")
        self.assertEqual(store.get_stats().total_records, 0)


class TestProcessSite(unittest.TestCase):
    """Verify the per-source workflow."""

    def test_unsuccessful_collect_is_scraping_error(self):
        """An unsuccessful collect result becomes one SCRAPING error."""
        result = _pipeline({"a": UnreachableCollector()}).process_site("a")
        self.assertEqual(len(result.errors), 1)
        self.assertEqual(result.errors[0].kind, ErrorKind.SCRAPING)
        self.assertEqual(result.errors[0].context["kinds"], ["network_error"])
        self.assertEqual(result.scraped, 0)

    def test_unknown_source_is_site_error(self):
        """A source without a collector fails as SITE_PROCESSING."""
        result = _pipeline({}).process_site("ghost")
        self.assertEqual(result.errors[0].kind, ErrorKind.SITE_PROCESSING)
        self.assertEqual(result.errors[0].cause.kind, ErrorKind.CONFIGURATION)

    def test_empty_source_has_no_errors(self):
        result = _pipeline({"a": StaticCollector(items=[])}).process_site("a")
        self.assertTrue(result.success)
        self.assertEqual(result.stored, 0)

    def test_existing_records_are_skipped(self):
        """Records already stored, or repeated within the run, are not written again."""
        store = MemoryStore()
        _seed(store, "u1")
        result = _pipeline(
            {"a": StaticCollector(items=_items("u1", "u2", "u2"))}, store=store
        ).process_site("a")
        self.assertEqual(result.scraped, 3)
        self.assertEqual(result.duplicates_skipped, 2)
        self.assertEqual(result.created, 1)
        self.assertEqual(result.stored, 1)

    def test_data_update_overwrites_existing(self):
        """With updates enabled an existing key is written as an update."""
        store = MemoryStore()
        _seed(store, "u1")
        result = _pipeline(
            {"a": StaticCollector(items=_items("u1", "u2"))}, store=store, enable_data_update=True
        ).process_site("a")
        self.assertEqual(result.updated, 1)
        self.assertEqual(result.created, 1)
        self.assertEqual(store.find_by_key("u1")["fields"]["title"], "title u1")

    def test_detection_disabled_upserts_existing_key(self):
        """Without duplicate detection every record reaches the store."""
        store = MemoryStore()
        _seed(store, "u1")
        result = _pipeline(
            {"a": StaticCollector(items=_items("u1"))}, store=store, enable_duplicate_detection=False
        ).process_site("a")
        self.assertEqual(result.duplicates_skipped, 0)
        self.assertEqual(result.updated, 1)

    def test_lookup_failure_keeps_record(self):
        """A failing duplicate lookup is treated as not found."""
        store = FlakyStore(lookup_fails=True)
        result = _pipeline({"a": StaticCollector(items=_items("u1", "u2"))}, store=store).process_site("a")
        self.assertEqual(result.errors, [])
        self.assertEqual(result.stored, 2)

    def test_translation_failure_skipped(self):
        """With skip enabled, records are stored untranslated and no error is recorded."""
        store = MemoryStore()
        result = _pipeline(
            {"a": StaticCollector(items=_items("u1", "u2"))},
            translator=FailingTranslator(),
            store=store,
        ).process_site("a")
        self.assertEqual(result.errors, [])
        self.assertEqual(result.stored, 2)
        self.assertEqual(result.translated, 0)
        self.assertEqual(store.find_by_key("u1")["translation_status"], "failed")

    def test_batch_failure_is_isolated(self):
        """A failing batch is recorded and later batches still run."""
        store = MemoryStore()
        result = _pipeline(
            {"a": StaticCollector(items=_items("u1", "u2", "u3", "u4"))},
            translator=FailingTranslator(failures=1),
            store=store,
            batch_size=2,
            skip_translation_on_error=False,
        ).process_site("a")
        self.assertEqual(len(result.errors), 1)
        error = result.errors[0]
        self.assertEqual(error.kind, ErrorKind.BATCH_PROCESSING)
        self.assertEqual(error.context["offset"], 0)
        self.assertEqual(error.cause.kind, ErrorKind.TRANSLATION)
        self.assertEqual(result.stored, 2)
        self.assertIsNone(store.find_by_key("u1"))
        self.assertIsNotNone(store.find_by_key("u3"))

    def test_upsert_failure_continues(self):
        """A failed write is a DATABASE error; the remaining records are stored."""
        store = FlakyStore(bad_keys={"u2"})
        result = _pipeline({"a": StaticCollector(items=_items("u1", "u2", "u3"))}, store=store).process_site("a")
        self.assertEqual([e.kind for e in result.errors], [ErrorKind.DATABASE])
        self.assertEqual(result.errors[0].context["key"], "u2")
        self.assertEqual(result.stored, 2)

    def test_retry_delay_attached_and_grows(self):
        """Repeated retryable failures get a growing retry_after_ms; a clean run resets."""
        tracker = ErrorTracker()
        store = FlakyStore(bad_keys={"u1"})
        pipeline = _pipeline({"a": StaticCollector(items=_items("u1"))}, store=store, tracker=tracker)

        first = pipeline.process_site("a").errors[0].context["retry_after_ms"]
        second = pipeline.process_site("a").errors[0].context["retry_after_ms"]
        self.assertGreaterEqual(first, 15_000)
        self.assertGreaterEqual(second, 30_000)
        self.assertEqual(tracker.occurrences("a", ErrorKind.DATABASE), 2)

        store.bad_keys.clear()
        self.assertTrue(pipeline.process_site("a").success)
        self.assertEqual(tracker.occurrences("a", ErrorKind.DATABASE), 0)

    def test_as_pipeline_result(self):
        pipeline = _pipeline({"a": StaticCollector(items=_items("u1"))})
        result = pipeline.as_pipeline_result(pipeline.process_site("a"))
        self.assertTrue(result.success)
        self.assertEqual(result.new_records, 1)
        self.assertIn("a", result.site_results)


class TestLifecycle(unittest.TestCase):
    def test_initialize_failure(self):
        """initialize() raises INITIALIZATION when the translator cannot start."""
        pipeline = _pipeline({}, translator=FailingTranslator(fail_initialize=True))
        with self.assertRaises(PipelineError) as ctx:
            pipeline.initialize()
        self.assertEqual(ctx.exception.kind, ErrorKind.INITIALIZATION)
        self.assertFalse(pipeline.initialized)

    def test_initialize_success(self):
        pipeline = _pipeline({})
        pipeline.initialize()
        self.assertTrue(pipeline.initialized)

    def test_cleanup_never_raises(self):
        """cleanup() logs translator failures instead of raising."""
        _pipeline({}, translator=FailingTranslator(fail_cleanup=True)).cleanup()


if __name__ == "__main__":
    unittest.main()
