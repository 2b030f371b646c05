from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Optional, Sequence

from .backoff import BackoffStrategy
from .config import AppConfig
from .errors import ErrorTracker
from .factory import CollectorFactory
from .health import HealthAggregator, collector_probe, store_probe, translator_probe
from .logging_utils import log_event
from .metrics import MetricsCollector
from .notifications import LoggingNotifier, NotificationService
from .pipeline import ProcessingPipeline
from .scheduler import Scheduler
from .storage import JsonlStore, MemoryStore, StoreBase
from .translation import PassthroughTranslator, TranslatorBase

logger = logging.getLogger(__name__)


@dataclass
class ServiceContext:
    """Every long-lived service of one process, built explicitly at startup."""

    config: AppConfig
    metrics: MetricsCollector
    store: StoreBase
    translator: TranslatorBase
    collectors: CollectorFactory
    notifier: NotificationService
    health: HealthAggregator
    scheduler: Scheduler
    tracker: ErrorTracker
    backoff: BackoffStrategy

    def make_pipeline(
        self, sources: Sequence[str] = (), cancel: Optional[threading.Event] = None
    ) -> ProcessingPipeline:
        """Pipeline over ``sources``; an empty selection means every configured source."""
        source_ids = list(sources) or self.collectors.source_ids()
        return ProcessingPipeline(
            config=self.config.pipeline,
            sources={source_id: self.collectors.source(source_id) for source_id in source_ids},
            collectors=self.collectors.collectors_for(source_ids),
            translator=self.translator,
            store=self.store,
            metrics=self.metrics,
            cancel=cancel,
            tracker=self.tracker,
            backoff=self.backoff,
        )

    def close(self) -> None:
        self.scheduler.stop()
        self.store.close()
        log_event(logger, logging.INFO, "context_closed")


def build_context(
    config: AppConfig,
    store: Optional[StoreBase] = None,
    translator: Optional[TranslatorBase] = None,
    notifier: Optional[NotificationService] = None,
    collectors: Optional[CollectorFactory] = None,
) -> ServiceContext:
    metrics = MetricsCollector()
    backoff = BackoffStrategy()
    if store is None:
        store = JsonlStore(config.store_path) if config.store_path else MemoryStore()
    translator = translator or PassthroughTranslator()
    notifier = notifier or NotificationService([LoggingNotifier()])
    collectors = collectors or CollectorFactory(config.sources, metrics=metrics, backoff=backoff)

    health_cfg = config.scheduler.health_check
    health = HealthAggregator(
        probes={
            "database": store_probe(store),
            "translation": translator_probe(translator),
            "scraping": collector_probe(metrics, health_cfg.metrics_window_secs, health_cfg.min_collect_success_rate),
        },
        timeout_ms=health_cfg.timeout_ms,
        retry_attempts=health_cfg.retry_attempts,
        retry_delay_ms=health_cfg.retry_delay_ms,
    )

    # The scheduler needs the context's pipeline factory, so it is attached last.
    context = ServiceContext(
        config=config,
        metrics=metrics,
        store=store,
        translator=translator,
        collectors=collectors,
        notifier=notifier,
        health=health,
        scheduler=None,  # type: ignore[arg-type]
        tracker=ErrorTracker(),
        backoff=backoff,
    )
    context.scheduler = Scheduler(
        config=config.scheduler,
        pipeline_factory=context.make_pipeline,
        health=health,
        notifier=notifier,
        known_sources=config.sources.keys(),
    )
    log_event(
        logger,
        logging.INFO,
        "context_built",
        sources=len(config.sources),
        jobs=len(config.scheduler.schedules),
        store=type(store).__name__,
    )
    return context
