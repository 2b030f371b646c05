from __future__ import annotations

import dataclasses
import itertools
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Union

from .config import HealthCheckConfig, MaintenanceConfig, ScheduleConfig, SchedulerConfig, schedule_from_dict
from .cron import CronSchedule
from .errors import ConfigError, ErrorKind, PipelineError, PipelineErrorAggregator
from .health import HealthAggregator, HealthCheckResult, HealthStatus
from .logging_utils import log_event
from .maintenance import MaintenanceWindow
from .models import PipelineResult
from .notifications import NotificationService
from .pipeline import ProcessingPipeline

logger = logging.getLogger(__name__)

PipelineFactory = Callable[[Sequence[str], threading.Event], ProcessingPipeline]


class SchedulerError(Exception):
    pass


class JobNotFoundError(SchedulerError, KeyError):
    def __str__(self) -> str:
        return f"Job not found: {self.args[0]}"


class JobExistsError(SchedulerError):
    def __str__(self) -> str:
        return f"Job already exists: {self.args[0]}"


class JobRunningError(SchedulerError):
    def __str__(self) -> str:
        return f"Job {self.args[0]} is already running"


class JobStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    ERROR = "error"
    DISABLED = "disabled"


@dataclass
class JobState:
    """Registry entry for one named job. Mutated only under the scheduler lock."""

    name: str
    config: ScheduleConfig
    schedule: CronSchedule
    enabled: bool
    status: JobStatus = JobStatus.IDLE
    run_count: int = 0
    error_count: int = 0
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None
    last_error: Optional[PipelineError] = None
    last_result: Optional[PipelineResult] = None
    timer: Optional[threading.Timer] = field(default=None, repr=False)
    token: int = 0

    def cancel_timer(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None

    @property
    def success_rate(self) -> Optional[float]:
        if not self.run_count:
            return None
        return (self.run_count - self.error_count) / self.run_count

    def statistics(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "cron_expression": self.config.cron_expression,
            "timezone": self.config.timezone,
            "sources": list(self.config.sources),
            "run_count": self.run_count,
            "error_count": self.error_count,
            "success_rate": self.success_rate,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "next_run": self.next_run.isoformat() if self.next_run else None,
            "last_error": self.last_error.to_dict() if self.last_error else None,
        }


class Scheduler:
    """Fires named recurring pipeline jobs.

    Each job owns one daemon threading.Timer armed for its next cron firing
    and re-armed every time it fires. A firing skips when the job is already
    running or a maintenance window is active, gates on system readiness,
    then runs a freshly built pipeline. stop() cancels every timer and sets
    the cancel event handed to in-flight pipelines.
    """

    def __init__(
        self,
        config: SchedulerConfig,
        pipeline_factory: PipelineFactory,
        health: HealthAggregator,
        notifier: NotificationService,
        clock: Optional[Callable[[], datetime]] = None,
        known_sources: Optional[Iterable[str]] = None,
    ) -> None:
        self._config = config
        self._pipeline_factory = pipeline_factory
        self._health = health
        self._notifier = notifier
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._known_sources = set(known_sources) if known_sources is not None else None

        self._lock = threading.RLock()
        self._jobs: Dict[str, JobState] = {}
        self._tokens = itertools.count(1)
        self._running = False
        self._maintenance_mode = False
        self._maintenance_window = MaintenanceWindow.from_config(config.maintenance)
        self._in_flight: Set[threading.Event] = set()
        self._last_health_check: Optional[HealthCheckResult] = None

        for name, schedule in config.schedules.items():
            self._register(name, schedule)

    # registry -----------------------------------------------------------

    def add_job(self, name: str, schedule: Union[ScheduleConfig, Mapping[str, Any]]) -> JobState:
        if not isinstance(schedule, ScheduleConfig):
            schedule = schedule_from_dict(schedule)
        with self._lock:
            if name in self._jobs:
                raise JobExistsError(name)
            job = self._register(name, schedule)
            if self._running and job.enabled:
                self._arm(job)
        log_event(logger, logging.INFO, "job_added", job=name, cron=schedule.cron_expression)
        return job

    def remove_job(self, name: str) -> None:
        with self._lock:
            job = self._jobs.pop(name, None)
            if job is None:
                raise JobNotFoundError(name)
            job.cancel_timer()
        log_event(logger, logging.INFO, "job_removed", job=name)

    def toggle_job(self, name: str, enabled: bool) -> None:
        """Start or stop one job's trigger; statistics are left untouched."""
        with self._lock:
            job = self._get(name)
            job.enabled = enabled
            job.config = dataclasses.replace(job.config, enabled=enabled)
            if enabled:
                if job.status == JobStatus.DISABLED:
                    job.status = JobStatus.IDLE
                if self._running:
                    self._arm(job)
            else:
                job.cancel_timer()
                job.next_run = None
                if job.status != JobStatus.RUNNING:
                    job.status = JobStatus.DISABLED
        log_event(logger, logging.INFO, "job_toggled", job=name, enabled=enabled)

    # lifecycle ----------------------------------------------------------

    def start(self) -> None:
        with self._lock:
            if self._running:
                log_event(logger, logging.INFO, "scheduler_already_running")
                return
            self._running = True
            for job in self._jobs.values():
                job.enabled = job.config.enabled
                if not job.enabled:
                    job.status = JobStatus.DISABLED
                    continue
                if job.status == JobStatus.DISABLED:
                    job.status = JobStatus.IDLE
                self._arm(job)
            active = sum(1 for job in self._jobs.values() if job.enabled)
        log_event(logger, logging.INFO, "scheduler_started", jobs=active)

    def stop(self) -> None:
        """Disable every job and cancel the runs currently in flight.

        Later manual triggers still run; only runs started before the stop
        see their cancel event set."""
        with self._lock:
            was_running = self._running
            self._running = False
            for cancel in self._in_flight:
                cancel.set()
            for job in self._jobs.values():
                job.cancel_timer()
                job.enabled = False
                job.next_run = None
                if job.status != JobStatus.RUNNING:
                    job.status = JobStatus.DISABLED
        log_event(logger, logging.INFO, "scheduler_stopped", was_running=was_running)

    @property
    def running(self) -> bool:
        return self._running

    # firing -------------------------------------------------------------

    def trigger_job(self, name: str) -> Optional[PipelineResult]:
        """Run a job now, outside its schedule.

        Raises JobRunningError if the job is already running. Returns None
        when the firing was skipped for maintenance or failed."""
        return self._execute(name, manual=True)

    def _on_timer(self, name: str, token: int) -> None:
        with self._lock:
            job = self._jobs.get(name)
            if job is None or job.token != token or not job.enabled or not self._running:
                return
            # Arm from the due time so an early wake-up cannot fire it twice.
            self._arm(job, after=job.next_run)
        self._execute(name, manual=False)

    def _execute(self, name: str, manual: bool) -> Optional[PipelineResult]:
        now = self._clock()
        with self._lock:
            job = self._jobs.get(name)
            if job is None:
                if manual:
                    raise JobNotFoundError(name)
                return None
            if job.status == JobStatus.RUNNING:
                if manual:
                    raise JobRunningError(name)
                log_event(logger, logging.INFO, "job_skipped", job=name, reason="already_running")
                return None
            config = job.config
            in_maintenance = self._in_maintenance(now)
            if not in_maintenance:
                job.status = JobStatus.RUNNING
                job.run_count += 1
                job.last_run = now
                cancel = threading.Event()
                self._in_flight.add(cancel)
                run_number = job.run_count

        if in_maintenance:
            log_event(logger, logging.INFO, "job_skipped", job=name, reason="maintenance")
            if config.notifications_enabled:
                self._notifier.notify_maintenance(name)
            return None

        log_event(logger, logging.INFO, "job_start", job=name, run=run_number, manual=manual)
        result: Optional[PipelineResult] = None
        failure: Optional[PipelineError] = None
        try:
            result = self._run_pipeline(name, config, cancel)
        except Exception as exc:  # noqa: BLE001
            failure = exc if isinstance(exc, PipelineError) else PipelineError.from_exception(exc)
        finally:
            with self._lock:
                self._in_flight.discard(cancel)

        with self._lock:
            if failure is None:
                job.last_error = None
                job.last_result = result
            else:
                job.error_count += 1
                job.last_error = failure
            if not job.enabled:
                job.status = JobStatus.DISABLED
            else:
                job.status = JobStatus.IDLE if failure is None else JobStatus.ERROR

        if failure is None:
            log_event(
                logger,
                logging.INFO,
                "job_complete",
                job=name,
                processed=result.total_processed,
                errors=len(result.errors),
                elapsed_ms=result.elapsed_ms,
            )
            if config.notifications_enabled:
                self._notifier.notify_complete(name, result)
                aggregator = PipelineErrorAggregator()
                aggregator.extend(result.errors)
                for error in aggregator.alertable():
                    self._notifier.notify_alert(name, error)
            return result

        log_event(logger, logging.ERROR, "job_failed", job=name, kind=failure.kind.value, error=failure.message)
        if config.notifications_enabled:
            self._notifier.notify_error(name, failure)
            if failure.should_alert():
                self._notifier.notify_alert(name, failure)
        return None

    def _run_pipeline(self, name: str, config: ScheduleConfig, cancel: threading.Event) -> PipelineResult:
        if config.health_check_enabled and self._config.health_check.enabled:
            readiness = self._health.is_system_ready()
            self._last_health_check = readiness.health
            if not readiness.ready:
                raise PipelineError(
                    f"Health check failed: {readiness.reason}",
                    ErrorKind.UNKNOWN,
                    context={"job": name, "score": readiness.health.score, "issues": readiness.health.issues},
                )

        sources = list(config.sources)
        pipeline = self._pipeline_factory(sources, cancel)
        try:
            pipeline.initialize()
            if len(sources) == 1:
                return pipeline.as_pipeline_result(pipeline.process_site(sources[0]))
            return pipeline.process_all_sites()
        finally:
            pipeline.cleanup()

    # health and maintenance -----------------------------------------------

    def perform_health_check(self) -> HealthCheckResult:
        result = self._health.perform_health_check()
        self._last_health_check = result
        if result.status == HealthStatus.UNHEALTHY:
            self._notifier.notify_health_failure(result.issues, result.score)
        return result

    def set_maintenance_mode(self, enabled: bool) -> None:
        with self._lock:
            self._maintenance_mode = enabled
        log_event(logger, logging.INFO, "maintenance_mode", enabled=enabled)

    def in_maintenance(self) -> bool:
        with self._lock:
            return self._in_maintenance(self._clock())

    def _in_maintenance(self, now: datetime) -> bool:
        if self._maintenance_mode:
            return True
        return self._config.maintenance.enabled and self._maintenance_window.contains(now)

    # reporting ----------------------------------------------------------

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            jobs = {name: job.statistics() for name, job in self._jobs.items()}
            return {
                "running": self._running,
                "jobs": jobs,
                "total_jobs": len(jobs),
                "active_jobs": sum(1 for job in self._jobs.values() if job.status != JobStatus.DISABLED),
                "maintenance_mode": self._in_maintenance(self._clock()),
                "last_health_check": self._last_health_check.to_dict() if self._last_health_check else None,
            }

    def get_job_statistics(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {name: job.statistics() for name, job in self._jobs.items()}

    def job(self, name: str) -> JobState:
        with self._lock:
            return self._get(name)

    def job_names(self) -> List[str]:
        with self._lock:
            return list(self._jobs)

    # configuration ------------------------------------------------------

    def update_config(
        self,
        health_check: Optional[HealthCheckConfig] = None,
        maintenance: Optional[MaintenanceConfig] = None,
    ) -> None:
        with self._lock:
            if maintenance is not None:
                window = MaintenanceWindow.from_config(maintenance)
                self._maintenance_window = window
                self._config = dataclasses.replace(self._config, maintenance=maintenance)
            if health_check is not None:
                self._health.configure(
                    timeout_ms=health_check.timeout_ms,
                    retry_attempts=health_check.retry_attempts,
                    retry_delay_ms=health_check.retry_delay_ms,
                )
                self._config = dataclasses.replace(self._config, health_check=health_check)
        log_event(logger, logging.INFO, "scheduler_config_updated")

    def test_notifications(self) -> Dict[str, bool]:
        return self._notifier.test_notifications()

    # internals ----------------------------------------------------------

    def _register(self, name: str, schedule: ScheduleConfig) -> JobState:
        if self._known_sources is not None:
            unknown = [s for s in schedule.sources if s not in self._known_sources]
            if unknown:
                raise ConfigError(f"job {name}: unknown sources {unknown}")
        job = JobState(
            name=name,
            config=schedule,
            schedule=CronSchedule.parse(schedule.cron_expression),
            enabled=schedule.enabled,
            status=JobStatus.IDLE if schedule.enabled else JobStatus.DISABLED,
        )
        self._jobs[name] = job
        return job

    def _get(self, name: str) -> JobState:
        try:
            return self._jobs[name]
        except KeyError:
            raise JobNotFoundError(name) from None

    def _next_fire(self, job: JobState, now: datetime) -> datetime:
        return job.schedule.next_fire(now, job.config.timezone)

    def _arm(self, job: JobState, after: Optional[datetime] = None) -> None:
        job.cancel_timer()
        now = self._clock()
        job.next_run = self._next_fire(job, now if after is None else max(now, after))
        delay = max(0.0, (job.next_run - now).total_seconds())
        job.token = next(self._tokens)
        timer = threading.Timer(delay, self._on_timer, args=(job.name, job.token))
        timer.daemon = True
        job.timer = timer
        timer.start()
