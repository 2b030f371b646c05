"""Scheduled multi-source ingestion pipeline.

Collects records from configured sources under per-source rate limits,
deduplicates, translates and persists them, and runs the whole workflow as
named recurring jobs gated by health checks and maintenance windows.

Key modules:
    rate_limiter    -- RateLimiter sliding-window throttle (one per source)
    errors          -- ErrorKind taxonomy, classify(), PipelineError, ErrorTracker
    backoff         -- compute_retry_delay and BackoffStrategy
    base            -- BaseCollector abstract class
    collectors      -- JsonApiCollector, StaticCollector
    factory         -- CollectorFactory (one collector and limiter per source)
    controller      -- ThreadPoolController bounded concurrency gate
    pipeline        -- ProcessingPipeline collect/dedup/translate/persist
    translation     -- TranslatorBase, PassthroughTranslator
    storage         -- StoreBase, MemoryStore, JsonlStore
    notifications   -- Notifier channels and NotificationService
    metrics         -- MetricsCollector for collect statistics
    health          -- HealthAggregator and probe builders
    cron            -- CronSchedule parsing and next-fire computation
    maintenance     -- MaintenanceWindow
    scheduler       -- Scheduler, JobState
    config          -- YAML config loading and validation
    app             -- build_context wiring
"""

__version__ = "0.1.0"
