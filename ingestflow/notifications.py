from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from .errors import PipelineError
from .logging_utils import log_event
from .models import PipelineResult

logger = logging.getLogger(__name__)

SUCCESS = "success"
WARNING = "warning"
ERROR = "error"
MAINTENANCE = "maintenance"
HEALTH = "health"
ALERT = "alert"
INFO = "info"


@dataclass(frozen=True)
class NotificationEvent:
    type: str
    title: str
    message: str
    job_name: Optional[str] = None
    timestamp: float = field(default_factory=time.time)
    details: Dict[str, Any] = field(default_factory=dict)


class Notifier(ABC):
    """A single delivery channel. Transport failures may raise."""

    @abstractmethod
    def notify(self, event: NotificationEvent) -> None:
        ...


class LoggingNotifier(Notifier):
    def __init__(self, level: int = logging.INFO) -> None:
        self._level = level

    def notify(self, event: NotificationEvent) -> None:
        level = logging.WARNING if event.type in (ERROR, ALERT, HEALTH) else self._level
        log_event(logger, level, "notification", type=event.type, job=event.job_name, title=event.title)


class MemoryNotifier(Notifier):
    """Keeps every event in a list; useful for tests and dry runs."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.events: List[NotificationEvent] = []

    def notify(self, event: NotificationEvent) -> None:
        with self._lock:
            self.events.append(event)

    def of_type(self, event_type: str) -> List[NotificationEvent]:
        with self._lock:
            return [e for e in self.events if e.type == event_type]


class NotificationService:
    """Builds scheduler events and fans them out to every channel.

    Delivery is best-effort: a failing channel is logged and skipped, and no
    method here ever raises."""

    def __init__(self, channels: Optional[Iterable[Notifier]] = None) -> None:
        self._channels = list(channels or [])

    def add_channel(self, channel: Notifier) -> None:
        self._channels.append(channel)

    @property
    def channels(self) -> List[Notifier]:
        return list(self._channels)

    def notify(self, event: NotificationEvent) -> int:
        """Return the number of channels that accepted the event."""
        delivered = 0
        for channel in self._channels:
            try:
                channel.notify(event)
                delivered += 1
            except Exception as exc:  # noqa: BLE001
                log_event(
                    logger,
                    logging.ERROR,
                    "notification_failed",
                    channel=type(channel).__name__,
                    type=event.type,
                    error=str(exc),
                )
        return delivered

    def notify_complete(self, job_name: str, result: PipelineResult) -> int:
        event_type = SUCCESS if result.success else WARNING
        title = f"Job {job_name} completed" if result.success else f"Job {job_name} completed with errors"
        message = (
            f"processed={result.total_processed} new={result.new_records} "
            f"updated={result.updated_records} errors={len(result.errors)} elapsed_ms={result.elapsed_ms}"
        )
        return self.notify(
            NotificationEvent(
                type=event_type,
                title=title,
                message=message,
                job_name=job_name,
                details={
                    "total_processed": result.total_processed,
                    "new_records": result.new_records,
                    "updated_records": result.updated_records,
                    "translated_records": result.translated_records,
                    "errors": [e.to_dict() for e in result.errors],
                    "elapsed_ms": result.elapsed_ms,
                },
            )
        )

    def notify_error(self, job_name: str, error: PipelineError) -> int:
        return self.notify(
            NotificationEvent(
                type=ERROR,
                title=f"Job {job_name} failed",
                message=error.user_message(),
                job_name=job_name,
                details=error.to_dict(),
            )
        )

    def notify_maintenance(self, job_name: str, message: str = "skipped during maintenance window") -> int:
        return self.notify(
            NotificationEvent(type=MAINTENANCE, title=f"Job {job_name} skipped", message=message, job_name=job_name)
        )

    def notify_health_failure(self, issues: List[str], score: int, job_name: Optional[str] = None) -> int:
        return self.notify(
            NotificationEvent(
                type=HEALTH,
                title="System health check failed",
                message="; ".join(issues) or "no issues reported",
                job_name=job_name,
                details={"score": score, "issues": list(issues)},
            )
        )

    def notify_alert(self, job_name: str, error: PipelineError) -> int:
        return self.notify(
            NotificationEvent(
                type=ALERT,
                title=f"{error.kind.value} in job {job_name}",
                message=error.message,
                job_name=job_name,
                details=error.to_dict(),
            )
        )

    def test_notifications(self) -> Dict[str, bool]:
        """Send a test event to each channel; returns channel name -> delivered."""
        event = NotificationEvent(type=INFO, title="Test notification", message="notification channels are working")
        results: Dict[str, bool] = {}
        for channel in self._channels:
            name = type(channel).__name__
            try:
                channel.notify(event)
                results[name] = True
            except Exception as exc:  # noqa: BLE001
                log_event(logger, logging.WARNING, "notification_test_failed", channel=name, error=str(exc))
                results[name] = False
        return results
