from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from .errors import ErrorKind, PipelineError, RunCancelled
from .metrics import MetricsCollector
from .models import CandidateRecord, CollectResult
from .rate_limiter import RateLimiter


class BaseCollector(ABC):
    """Abstract base class defining the collect workflow for one source.

    collect() validates the request, waits for a rate-limiter slot, fetches
    and parses. It never raises: failures come back as an unsuccessful
    CollectResult whose errors are already classified.
    """

    def __init__(
        self,
        rate_limiter: Optional[RateLimiter] = None,
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        self._rate_limiter = rate_limiter
        self._metrics = metrics

    @property
    def rate_limiter(self) -> Optional[RateLimiter]:
        return self._rate_limiter

    def collect(
        self,
        source_id: str,
        params: Optional[Dict[str, Any]] = None,
        cancel: Optional[threading.Event] = None,
    ) -> CollectResult:
        start_ms = self._now_ms()
        params = dict(params or {})
        try:
            self.validate(source_id, params)
            response = self.fetch(source_id, params, cancel)
            try:
                records = self.parse(source_id, response)
            except Exception as parse_exc:  # noqa: BLE001
                error = _as_error(parse_exc, source_id, ErrorKind.PARSING)
                return self._finish(source_id, start_ms, [], [error])
            return self._finish(source_id, start_ms, records, [])
        except RunCancelled:
            raise
        except Exception as exc:  # noqa: BLE001
            error = _as_error(exc, source_id)
            return self._finish(source_id, start_ms, [], [error])

    def validate(self, source_id: str, params: Dict[str, Any]) -> None:
        if not source_id:
            raise PipelineError("source_id is required", ErrorKind.VALIDATION)

    def wait_for_slot(self, cancel: Optional[threading.Event] = None) -> None:
        """Funnel an outbound request through the source's rate limiter."""
        if self._rate_limiter is not None:
            self._rate_limiter.wait_for_slot(cancel)

    def health_check(self) -> None:
        """Raise if the collector cannot currently serve requests."""

    @abstractmethod
    def fetch(self, source_id: str, params: Dict[str, Any], cancel: Optional[threading.Event]) -> Any:
        ...

    @abstractmethod
    def parse(self, source_id: str, response: Any) -> List[CandidateRecord]:
        ...

    def _finish(
        self,
        source_id: str,
        start_ms: int,
        records: List[CandidateRecord],
        errors: List[PipelineError],
    ) -> CollectResult:
        result = CollectResult(
            source_id=source_id,
            success=not errors,
            records=records,
            errors=errors,
            latency_ms=self._now_ms() - start_ms,
        )
        if self._metrics:
            self._metrics.record_result(result)
        return result

    @staticmethod
    def _now_ms() -> int:
        return int(time.time() * 1000)


def _as_error(exc: Exception, source_id: str, kind: Optional[ErrorKind] = None) -> PipelineError:
    """Keep errors already classified at the throw site; wrap anything else."""
    if isinstance(exc, PipelineError):
        error = exc
    else:
        error = PipelineError.from_exception(exc, kind)
    error.context.setdefault("source_id", source_id)
    return error
