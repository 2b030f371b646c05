"""Concurrent health probing of the pipeline's collaborators.

A probe is any zero-argument callable: returning normally means healthy,
raising means unhealthy with ``str(exc)`` as the error. Every check cycle
runs all probes in parallel on daemon threads under one shared deadline
and recomputes the aggregate from scratch. A probe that never returns is
reported as timed out; its thread is left behind but never blocks exit.
"""

from __future__ import annotations

import logging
import math
import queue
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

from .logging_utils import log_event
from .metrics import MetricsCollector
from .storage import StoreBase
from .translation import TranslatorBase

logger = logging.getLogger(__name__)

Probe = Callable[[], Any]

DEGRADED_THRESHOLD = 66


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass(frozen=True)
class ServiceHealth:
    status: HealthStatus
    response_time_ms: Optional[int] = None
    error: Optional[str] = None

    @property
    def healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY


@dataclass(frozen=True)
class HealthCheckResult:
    status: HealthStatus
    timestamp: float
    services: Dict[str, ServiceHealth]
    score: int
    issues: List[str] = field(default_factory=list)

    def healthy_services(self) -> List[str]:
        return [name for name, svc in self.services.items() if svc.healthy]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "timestamp": self.timestamp,
            "score": self.score,
            "issues": list(self.issues),
            "services": {
                name: {"status": svc.status.value, "response_time_ms": svc.response_time_ms, "error": svc.error}
                for name, svc in self.services.items()
            },
        }


@dataclass(frozen=True)
class Readiness:
    ready: bool
    health: HealthCheckResult
    reason: Optional[str] = None


def score_services(services: Mapping[str, ServiceHealth]) -> int:
    if not services:
        return 100
    healthy = sum(1 for svc in services.values() if svc.healthy)
    # Round half up.
    return int(math.floor(100 * healthy / len(services) + 0.5))


def status_for_score(score: int) -> HealthStatus:
    if score >= 100:
        return HealthStatus.HEALTHY
    if score >= DEGRADED_THRESHOLD:
        return HealthStatus.DEGRADED
    return HealthStatus.UNHEALTHY


class HealthAggregator:
    def __init__(
        self,
        probes: Mapping[str, Probe],
        timeout_ms: int = 30_000,
        retry_attempts: int = 3,
        retry_delay_ms: int = 5_000,
        critical_service: str = "database",
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._probes = dict(probes)
        self._timeout_ms = timeout_ms
        self._retry_attempts = max(1, retry_attempts)
        self._retry_delay_ms = retry_delay_ms
        self._critical_service = critical_service
        self._sleep = sleep
        self._last_result: Optional[HealthCheckResult] = None

    @property
    def last_result(self) -> Optional[HealthCheckResult]:
        return self._last_result

    def configure(self, timeout_ms: Optional[int] = None, retry_attempts: Optional[int] = None,
                  retry_delay_ms: Optional[int] = None) -> None:
        if timeout_ms is not None:
            self._timeout_ms = timeout_ms
        if retry_attempts is not None:
            self._retry_attempts = max(1, retry_attempts)
        if retry_delay_ms is not None:
            self._retry_delay_ms = retry_delay_ms

    def perform_health_check(self) -> HealthCheckResult:
        results: queue.Queue = queue.Queue()
        for name, probe in self._probes.items():
            thread = threading.Thread(
                target=_report_probe, args=(name, probe, results), name=f"health-{name}", daemon=True
            )
            thread.start()

        finished: Dict[str, ServiceHealth] = {}
        deadline = time.monotonic() + self._timeout_ms / 1000.0
        while len(finished) < len(self._probes):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            try:
                name, health = results.get(timeout=remaining)
            except queue.Empty:
                break
            finished[name] = health

        timed_out = ServiceHealth(
            status=HealthStatus.UNHEALTHY,
            response_time_ms=self._timeout_ms,
            error=f"timed out after {self._timeout_ms} ms",
        )
        services = {name: finished.get(name, timed_out) for name in self._probes}

        score = score_services(services)
        issues = [f"{name}: {svc.error or svc.status.value}" for name, svc in services.items() if not svc.healthy]
        result = HealthCheckResult(
            status=status_for_score(score),
            timestamp=time.time(),
            services=services,
            score=score,
            issues=issues,
        )
        self._last_result = result
        log_event(logger, logging.INFO, "health_check", status=result.status.value, score=score, issues=len(issues))
        return result

    def perform_health_check_with_retries(self) -> HealthCheckResult:
        result = self.perform_health_check()
        attempt = 1
        while result.status == HealthStatus.UNHEALTHY and attempt < self._retry_attempts:
            log_event(logger, logging.WARNING, "health_check_retry", attempt=attempt, score=result.score)
            self._sleep(self._retry_delay_ms / 1000.0)
            result = self.perform_health_check()
            attempt += 1
        return result

    def is_system_ready(self) -> Readiness:
        result = self.perform_health_check_with_retries()
        if result.status == HealthStatus.HEALTHY:
            return Readiness(ready=True, health=result)
        if result.status == HealthStatus.DEGRADED:
            healthy = result.healthy_services()
            if self._critical_service in healthy and len(healthy) >= 2:
                return Readiness(ready=True, health=result)
        return Readiness(
            ready=False,
            health=result,
            reason="System health check failed: " + ", ".join(result.issues),
        )


def _run_probe(probe: Probe) -> ServiceHealth:
    start = time.monotonic()
    try:
        probe()
    except Exception as exc:  # noqa: BLE001
        return ServiceHealth(
            status=HealthStatus.UNHEALTHY,
            response_time_ms=int((time.monotonic() - start) * 1000),
            error=str(exc) or type(exc).__name__,
        )
    return ServiceHealth(status=HealthStatus.HEALTHY, response_time_ms=int((time.monotonic() - start) * 1000))


def _report_probe(name: str, probe: Probe, results: queue.Queue) -> None:
    results.put((name, _run_probe(probe)))


def store_probe(store: StoreBase) -> Probe:
    def probe() -> None:
        store.get_stats()

    return probe


def translator_probe(translator: TranslatorBase) -> Probe:
    def probe() -> None:
        translator.get_cache_stats()

    return probe


def collector_probe(metrics: MetricsCollector, window_secs: int = 3_600, min_success_rate: float = 0.5) -> Probe:
    """Unhealthy when the recent collect success rate falls below the threshold.

    No collects in the window counts as healthy."""

    def probe() -> None:
        snapshot = metrics.snapshot(window_secs)
        rate = snapshot.success_rate
        if rate is not None and rate < min_success_rate:
            raise RuntimeError(f"{int(round(rate * 100))}% success")

    return probe
