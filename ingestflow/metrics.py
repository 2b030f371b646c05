from __future__ import annotations

import time
from collections import deque
from threading import Lock
from typing import Callable, Deque, Dict, List, Optional

from .errors import ErrorKind
from .models import CollectResult, MetricsSnapshot


class MetricsCollector:
    """Thread-safe collector for collector-call outcomes.

    Records CollectResult events and produces aggregated MetricsSnapshot
    objects over sliding time windows. The scraping health probe reads the
    success rate from here."""

    def __init__(self, maxlen: int = 10000, clock: Callable[[], float] = time.time) -> None:
        self._lock = Lock()
        self._clock = clock
        self._events: Deque[tuple[float, CollectResult]] = deque(maxlen=maxlen)

    def record_result(self, result: CollectResult) -> None:
        """Record a collect result with the current timestamp."""
        with self._lock:
            self._events.append((self._clock(), result))

    def snapshot(self, window_secs: int, source_id: Optional[str] = None) -> MetricsSnapshot:
        """Return aggregated metrics for events within the last window_secs seconds."""
        now = self._clock()
        cutoff = now - window_secs
        with self._lock:
            events: List[CollectResult] = [
                e for ts, e in self._events
                if ts >= cutoff and (source_id is None or e.source_id == source_id)
            ]
        kinds = [err.kind for e in events for err in e.errors]
        total = len(events)
        return MetricsSnapshot(
            window_secs=window_secs,
            total_collects=total,
            success_count=sum(1 for e in events if e.success),
            record_count=sum(len(e.records) for e in events),
            timeout_count=kinds.count(ErrorKind.TIMEOUT),
            rate_limited_count=kinds.count(ErrorKind.RATE_LIMIT),
            blocked_count=kinds.count(ErrorKind.BLOCKED),
            avg_latency_ms=(sum(e.latency_ms for e in events) / total) if total else 0.0,
            timestamp=now,
        )

    def export_json(self) -> List[Dict]:
        """Export all recorded events as a list of dictionaries."""
        with self._lock:
            return [
                {
                    "timestamp": ts,
                    "source_id": e.source_id,
                    "success": e.success,
                    "records": len(e.records),
                    "latency_ms": e.latency_ms,
                    "errors": [err.kind.value for err in e.errors],
                }
                for ts, e in self._events
            ]
