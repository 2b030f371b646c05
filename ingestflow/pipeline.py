from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, List, Mapping, Optional, Set

from .backoff import BackoffStrategy
from .base import BaseCollector
from .config import PipelineConfig, SourceConfig
from .controller import ThreadPoolController
from .errors import ErrorKind, ErrorTracker, PipelineError, PipelineErrorAggregator, RunCancelled
from .logging_utils import log_event
from .metrics import MetricsCollector
from .models import (
    CandidateRecord,
    CollectResult,
    PipelineResult,
    SiteProcessingResult,
    TranslatedRecord,
    TranslationStatus,
)
from .storage import StoreBase
from .translation import TranslatorBase

logger = logging.getLogger(__name__)

_TRANSLATED = (TranslationStatus.COMPLETE, TranslationStatus.PARTIAL)


class ProcessingPipeline:
    """Runs collect -> deduplicate -> translate -> persist for each source.

    process_all_sites() and process_site() never raise: every failure is
    converted to a PipelineError and collected into the result. Only
    initialize() raises, and only with kind INITIALIZATION.
    """

    def __init__(
        self,
        config: PipelineConfig,
        sources: Mapping[str, SourceConfig],
        collectors: Mapping[str, BaseCollector],
        translator: TranslatorBase,
        store: StoreBase,
        metrics: Optional[MetricsCollector] = None,
        cancel: Optional[threading.Event] = None,
        tracker: Optional[ErrorTracker] = None,
        backoff: Optional[BackoffStrategy] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._sources = dict(sources)
        self._collectors = dict(collectors)
        self._translator = translator
        self._store = store
        self._metrics = metrics
        self._cancel = cancel or threading.Event()
        self._tracker = tracker or ErrorTracker()
        self._backoff = backoff or BackoffStrategy()
        self._clock = clock
        self._initialized = False

    @property
    def source_ids(self) -> List[str]:
        return list(self._sources)

    @property
    def initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> None:
        try:
            self._translator.initialize()
            self._store.get_stats()
        except Exception as exc:  # noqa: BLE001
            error = PipelineError(
                f"pipeline initialization failed: {exc}",
                ErrorKind.INITIALIZATION,
                cause=exc,
            )
            log_event(logger, logging.ERROR, "pipeline_init_failed", error=str(exc))
            raise error from exc
        self._initialized = True
        log_event(logger, logging.INFO, "pipeline_initialized", sources=len(self._sources))

    def process_all_sites(self) -> PipelineResult:
        start = self._clock()
        log_event(logger, logging.INFO, "pipeline_start", sources=len(self._sources))

        limit = self._config.max_concurrent_sources
        site_results: Dict[str, SiteProcessingResult] = {}
        futures = {}
        with ThreadPoolController(max_workers=limit, initial_limit=limit) as controller:
            for source_id in self._sources:
                if self._cancel.is_set():
                    site_results[source_id] = self._cancelled_result(source_id)
                    continue
                futures[source_id] = controller.submit(self.process_site, source_id)

            for source_id, future in futures.items():
                try:
                    site_results[source_id] = future.result()
                except Exception as exc:  # noqa: BLE001
                    site_results[source_id] = self._failed_site(source_id, exc)

        result = PipelineResult()
        for source_id in self._sources:
            _accumulate(result, site_results[source_id])
        result.success = not result.errors
        result.elapsed_ms = self._elapsed_ms(start)
        aggregator = PipelineErrorAggregator()
        aggregator.extend(result.errors)

        log_event(
            logger,
            logging.INFO,
            "pipeline_complete",
            total_processed=result.total_processed,
            new=result.new_records,
            updated=result.updated_records,
            translated=result.translated_records,
            errors=len(result.errors),
            elapsed_ms=result.elapsed_ms,
            error_kinds=aggregator.statistics()["by_kind"],
        )
        return result

    def process_site(self, source_id: str) -> SiteProcessingResult:
        start = self._clock()
        result = SiteProcessingResult(source_id=source_id)
        try:
            self._run_site(source_id, result)
        except RunCancelled:
            result.errors.append(self._cancel_error(source_id))
        except Exception as exc:  # noqa: BLE001
            result.errors.append(self._site_error(source_id, exc))
            log_event(logger, logging.ERROR, "site_failed", source_id=source_id, error=str(exc))
        result.elapsed_ms = self._elapsed_ms(start)
        self._track_errors(source_id, result.errors)
        log_event(
            logger,
            logging.INFO,
            "site_complete",
            source_id=source_id,
            scraped=result.scraped,
            translated=result.translated,
            stored=result.stored,
            skipped=result.duplicates_skipped,
            errors=len(result.errors),
        )
        return result

    def as_pipeline_result(self, site_result: SiteProcessingResult) -> PipelineResult:
        result = PipelineResult()
        _accumulate(result, site_result)
        result.success = not result.errors
        result.elapsed_ms = site_result.elapsed_ms
        return result

    def cleanup(self) -> None:
        try:
            self._translator.cleanup()
            log_event(logger, logging.INFO, "pipeline_cleanup")
        except Exception as exc:  # noqa: BLE001
            log_event(logger, logging.ERROR, "pipeline_cleanup_failed", error=str(exc))

    def _run_site(self, source_id: str, result: SiteProcessingResult) -> None:
        source = self._sources.get(source_id)
        collector = self._collectors.get(source_id)
        if source is None or collector is None:
            raise PipelineError(f"no collector configured for {source_id}", ErrorKind.CONFIGURATION)

        try:
            collected = collector.collect(source_id, source.params, self._cancel)
        except RunCancelled:
            raise
        except Exception as exc:  # noqa: BLE001
            if self._metrics is not None:
                self._metrics.record_result(
                    CollectResult(source_id, False, [], [PipelineError.from_exception(exc)], 0)
                )
            raise PipelineError(
                f"Scraping failed for {source_id}", ErrorKind.SCRAPING, cause=exc, context={"source_id": source_id}
            ) from exc

        if not collected.success:
            detail = ", ".join(str(e) for e in collected.errors) or "unknown scraping error"
            cause = collected.errors[0] if collected.errors else None
            result.errors.append(
                PipelineError(
                    f"Scraping failed for {source_id}: {detail}",
                    ErrorKind.SCRAPING,
                    cause=cause,
                    context={"source_id": source_id, "kinds": [e.kind.value for e in collected.errors]},
                )
            )
            return

        records = collected.records
        result.scraped = len(records)
        if not records:
            log_event(logger, logging.WARNING, "site_empty", source_id=source_id)
            return

        seen: Set[str] = set()
        batch_size = self._config.batch_size
        for offset in range(0, len(records), batch_size):
            if self._cancel.is_set():
                result.errors.append(self._cancel_error(source_id))
                return
            batch = records[offset:offset + batch_size]
            try:
                self._process_batch(source_id, batch, seen, result)
            except RunCancelled:
                raise
            except Exception as exc:  # noqa: BLE001
                result.errors.append(
                    PipelineError(
                        f"Batch processing failed for {source_id}",
                        ErrorKind.BATCH_PROCESSING,
                        cause=exc,
                        context={"source_id": source_id, "offset": offset, "size": len(batch)},
                    )
                )
                log_event(logger, logging.ERROR, "batch_failed", source_id=source_id, offset=offset, error=str(exc))

    def _process_batch(
        self,
        source_id: str,
        batch: List[CandidateRecord],
        seen: Set[str],
        result: SiteProcessingResult,
    ) -> None:
        survivors = self._filter_duplicates(batch, seen)
        result.duplicates_skipped += len(batch) - len(survivors)
        if not survivors:
            return

        translated = self._translate(source_id, survivors)
        result.translated += sum(1 for r in translated if r.status in _TRANSLATED)

        for record in translated:
            try:
                stored = self._store.upsert(record)
            except Exception as exc:  # noqa: BLE001
                result.errors.append(
                    PipelineError(
                        f"Failed to store record {record.key}",
                        ErrorKind.DATABASE,
                        cause=exc,
                        context={"source_id": source_id, "key": record.key},
                    )
                )
                log_event(logger, logging.ERROR, "store_failed", source_id=source_id, key=record.key, error=str(exc))
                continue
            result.stored += 1
            if stored.created:
                result.created += 1
            else:
                result.updated += 1

    def _filter_duplicates(self, batch: List[CandidateRecord], seen: Set[str]) -> List[CandidateRecord]:
        if not self._config.enable_duplicate_detection:
            return list(batch)

        survivors: List[CandidateRecord] = []
        for record in batch:
            if record.key in seen:
                continue
            try:
                existing = self._store.find_by_key(record.key)
            except Exception as exc:  # noqa: BLE001
                # Keep the record when the lookup fails.
                log_event(logger, logging.WARNING, "dedup_lookup_failed", key=record.key, error=str(exc))
                existing = None
            if existing is not None and not self._config.enable_data_update:
                log_event(logger, logging.DEBUG, "duplicate_skipped", key=record.key)
                continue
            survivors.append(record)
            seen.add(record.key)
        return survivors

    def _translate(self, source_id: str, records: List[CandidateRecord]) -> List[TranslatedRecord]:
        try:
            return self._translator.translate_batch(records)
        except Exception as exc:  # noqa: BLE001
            if not self._config.skip_translation_on_error:
                raise PipelineError(
                    f"Translation failed for {source_id}",
                    ErrorKind.TRANSLATION,
                    cause=exc,
                    context={"source_id": source_id, "records": len(records)},
                ) from exc
            log_event(logger, logging.WARNING, "translation_skipped", source_id=source_id, error=str(exc))
            return [
                TranslatedRecord(record=r, fields=dict(r.payload), status=TranslationStatus.FAILED)
                for r in records
            ]

    def _track_errors(self, source_id: str, errors: List[PipelineError]) -> None:
        """Count failures per (source, kind) and attach the recommended retry delay."""
        if not errors:
            self._tracker.reset(source=source_id)
            return
        for error in errors:
            occurrence = self._tracker.record(source_id, error.kind)
            if error.retryable:
                error.context["retry_after_ms"] = self._backoff.get_delay_ms(error.kind, occurrence)

    def _site_error(self, source_id: str, exc: Exception) -> PipelineError:
        return PipelineError(
            f"Site processing failed for {source_id}",
            ErrorKind.SITE_PROCESSING,
            cause=exc,
            context={"source_id": source_id},
        )

    def _failed_site(self, source_id: str, exc: Exception) -> SiteProcessingResult:
        log_event(logger, logging.ERROR, "site_failed", source_id=source_id, error=str(exc))
        return SiteProcessingResult(source_id=source_id, errors=[self._site_error(source_id, exc)])

    def _cancel_error(self, source_id: str) -> PipelineError:
        return PipelineError("cancelled", ErrorKind.SITE_PROCESSING, context={"source_id": source_id})

    def _cancelled_result(self, source_id: str) -> SiteProcessingResult:
        return SiteProcessingResult(source_id=source_id, errors=[self._cancel_error(source_id)])

    def _elapsed_ms(self, start: float) -> int:
        return int((self._clock() - start) * 1000)


def _accumulate(result: PipelineResult, site: SiteProcessingResult) -> None:
    result.site_results[site.source_id] = site
    result.total_processed += site.scraped
    result.translated_records += site.translated
    result.stored_records += site.stored
    result.new_records += site.created
    result.updated_records += site.updated
    result.errors.extend(site.errors)
