"""Failure taxonomy shared by every stage of the ingestion pipeline.

Each ``ErrorKind`` carries three fixed properties (retryable, base backoff,
alertable) that are looked up wherever an error crosses a stage boundary.
Errors raised by code we control attach a kind directly; opaque errors from
collaborators are mapped with the keyword heuristic in ``classify``.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple


class ErrorKind(str, Enum):
    NETWORK = "network_error"
    TIMEOUT = "timeout_error"
    RATE_LIMIT = "rate_limit_error"
    AUTHENTICATION = "authentication_error"
    BLOCKED = "blocked_error"
    PARSING = "parsing_error"
    VALIDATION = "validation_error"
    SCRAPING = "scraping_error"
    TRANSLATION = "translation_error"
    DATABASE = "database_error"
    INITIALIZATION = "initialization_error"
    CONFIGURATION = "configuration_error"
    SITE_PROCESSING = "site_processing_error"
    BATCH_PROCESSING = "batch_processing_error"
    UNKNOWN = "unknown_error"


@dataclass(frozen=True)
class KindPolicy:
    retryable: bool
    base_backoff_ms: int
    alertable: bool


_NO_RETRY = KindPolicy(retryable=False, base_backoff_ms=0, alertable=False)
_ALERT_NO_RETRY = KindPolicy(retryable=False, base_backoff_ms=0, alertable=True)

KIND_POLICIES: Dict[ErrorKind, KindPolicy] = {
    ErrorKind.NETWORK: KindPolicy(True, 30_000, False),
    ErrorKind.TIMEOUT: KindPolicy(True, 45_000, False),
    ErrorKind.RATE_LIMIT: KindPolicy(True, 60_000, False),
    ErrorKind.DATABASE: KindPolicy(True, 15_000, True),
    ErrorKind.BLOCKED: KindPolicy(True, 300_000, False),
    ErrorKind.UNKNOWN: KindPolicy(True, 10_000, False),
    ErrorKind.AUTHENTICATION: _NO_RETRY,
    ErrorKind.PARSING: _NO_RETRY,
    ErrorKind.VALIDATION: _NO_RETRY,
    ErrorKind.SCRAPING: _NO_RETRY,
    ErrorKind.TRANSLATION: _NO_RETRY,
    ErrorKind.SITE_PROCESSING: _NO_RETRY,
    ErrorKind.BATCH_PROCESSING: _NO_RETRY,
    ErrorKind.INITIALIZATION: _ALERT_NO_RETRY,
    ErrorKind.CONFIGURATION: _ALERT_NO_RETRY,
}

_USER_MESSAGES: Dict[ErrorKind, str] = {
    ErrorKind.SCRAPING: "Failed to collect records from the source. It may be temporarily unavailable.",
    ErrorKind.TRANSLATION: "Failed to translate records. The translation provider may be unavailable.",
    ErrorKind.DATABASE: "Failed to save records. A storage problem was detected.",
    ErrorKind.NETWORK: "A network error occurred while contacting the source.",
    ErrorKind.RATE_LIMIT: "The source rate limit was exceeded. Processing resumes on the next run.",
    ErrorKind.BLOCKED: "The source is refusing our requests.",
    ErrorKind.VALIDATION: "Record validation failed. Invalid or incomplete data was detected.",
    ErrorKind.TIMEOUT: "The operation timed out.",
    ErrorKind.CONFIGURATION: "A configuration error was detected. Please contact the administrator.",
    ErrorKind.INITIALIZATION: "The pipeline could not be initialized.",
}


def is_retryable(kind: ErrorKind) -> bool:
    return KIND_POLICIES[kind].retryable


def is_alertable(kind: ErrorKind) -> bool:
    return KIND_POLICIES[kind].alertable


def base_backoff_ms(kind: ErrorKind) -> int:
    return KIND_POLICIES[kind].base_backoff_ms


class ConfigError(ValueError):
    pass


class RunCancelled(Exception):
    """Raised when an in-flight run observes its cancel event."""


class PipelineError(Exception):
    """A classified failure collected at a stage boundary."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.UNKNOWN,
        cause: Optional[BaseException] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.cause = cause
        self.context = dict(context or {})
        self.timestamp = datetime.now(timezone.utc)
        self.retryable = is_retryable(kind)
        if cause is not None:
            self.__cause__ = cause

    @classmethod
    def from_exception(
        cls,
        exc: BaseException,
        kind: Optional[ErrorKind] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> "PipelineError":
        """Wrap ``exc``; when no kind is given it is classified."""
        if kind is None:
            kind = classify_exception(exc)
        return cls(str(exc) or type(exc).__name__, kind, cause=exc, context=context)

    def should_alert(self) -> bool:
        return is_alertable(self.kind)

    def retry_delay_ms(self) -> int:
        return base_backoff_ms(self.kind)

    def user_message(self) -> str:
        return _USER_MESSAGES.get(self.kind, "An unexpected error occurred during processing.")

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "kind": self.kind.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "retryable": self.retryable,
            "context": self.context,
        }
        if self.cause is not None:
            data["cause"] = {"name": type(self.cause).__name__, "message": str(self.cause)}
        return data

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"

    def __repr__(self) -> str:
        return f"PipelineError(kind={self.kind.name}, message={self.message!r})"


# Order matters: the first matching rule wins.
_RULES: List[Tuple[ErrorKind, Tuple[str, ...], Tuple[str, ...]]] = [
    (ErrorKind.TIMEOUT, ("timeout", "timed out"), ("timeout",)),
    (ErrorKind.RATE_LIMIT, ("rate limit", "too many requests", "429"), ("ratelimit",)),
    (ErrorKind.BLOCKED, ("403", "forbidden", "captcha", "blocked", "bot detection", "access denied"), ()),
    (ErrorKind.AUTHENTICATION, ("401", "unauthorized", "authentication"), ("auth",)),
    (
        ErrorKind.NETWORK,
        ("network", "connection", "econnrefused", "enotfound", "name or service not known"),
        ("connectionerror", "networkerror"),
    ),
    (ErrorKind.PARSING, ("parse", "malformed", "invalid json", "decode"), ("jsondecodeerror", "syntaxerror")),
    (ErrorKind.VALIDATION, ("validation", "required", "missing"), ("validationerror",)),
    (ErrorKind.DATABASE, ("database", "sqlite", "deadlock"), ("operationalerror", "integrityerror")),
]


def classify(message: str, name: str = "") -> ErrorKind:
    """Map an opaque error to a kind by keyword inspection."""
    message = (message or "").lower()
    name = (name or "").lower()
    for kind, message_words, name_words in _RULES:
        if any(word in message for word in message_words):
            return kind
        if any(word in name for word in name_words):
            return kind
    return ErrorKind.UNKNOWN


def classify_exception(exc: BaseException) -> ErrorKind:
    if isinstance(exc, PipelineError):
        return exc.kind
    if isinstance(exc, ConfigError):
        return ErrorKind.CONFIGURATION
    if isinstance(exc, TimeoutError):
        return ErrorKind.TIMEOUT
    return classify(str(exc), type(exc).__name__)


class PipelineErrorAggregator:
    """Collects errors for one run and answers questions about them."""

    def __init__(self) -> None:
        self._errors: List[PipelineError] = []

    def add(self, error: PipelineError) -> None:
        self._errors.append(error)

    def extend(self, errors: List[PipelineError]) -> None:
        self._errors.extend(errors)

    @property
    def errors(self) -> List[PipelineError]:
        return list(self._errors)

    def by_kind(self, kind: ErrorKind) -> List[PipelineError]:
        return [e for e in self._errors if e.kind == kind]

    def retryable(self) -> List[PipelineError]:
        return [e for e in self._errors if e.retryable]

    def alertable(self) -> List[PipelineError]:
        return [e for e in self._errors if e.should_alert()]

    def latest(self) -> Optional[PipelineError]:
        return self._errors[-1] if self._errors else None

    def has_errors(self) -> bool:
        return bool(self._errors)

    def statistics(self) -> Dict[str, Any]:
        by_kind: Dict[str, int] = {}
        for error in self._errors:
            by_kind[error.kind.value] = by_kind.get(error.kind.value, 0) + 1
        return {
            "total": len(self._errors),
            "by_kind": by_kind,
            "retryable": len(self.retryable()),
            "alertable": len(self.alertable()),
        }

    def clear(self) -> None:
        self._errors.clear()


RETRY_COOLOFF_SECS = 60.0


class ErrorTracker:
    """Per (source, kind) failure history used to refuse hot-loop retries."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._counts: Dict[Tuple[str, ErrorKind], int] = {}
        self._last_seen: Dict[Tuple[str, ErrorKind], float] = {}

    def record(self, source: str, kind: ErrorKind) -> int:
        """Record one occurrence and return the new occurrence count."""
        key = (source, kind)
        with self._lock:
            self._counts[key] = self._counts.get(key, 0) + 1
            self._last_seen[key] = self._clock()
            return self._counts[key]

    def occurrences(self, source: str, kind: ErrorKind) -> int:
        with self._lock:
            return self._counts.get((source, kind), 0)

    def should_retry(self, source: str, kind: ErrorKind, max_retries: int = 3) -> bool:
        if not is_retryable(kind):
            return False
        key = (source, kind)
        with self._lock:
            count = self._counts.get(key, 0)
            last = self._last_seen.get(key)
        if count >= max_retries:
            return False
        if last is not None and self._clock() - last < RETRY_COOLOFF_SECS:
            return False
        return True

    def reset(self, source: Optional[str] = None, kind: Optional[ErrorKind] = None) -> None:
        with self._lock:
            for key in list(self._counts):
                if source is not None and key[0] != source:
                    continue
                if kind is not None and key[1] != kind:
                    continue
                self._counts.pop(key, None)
                self._last_seen.pop(key, None)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            items = list(self._counts.items())
        by_kind = {kind.value: 0 for kind in ErrorKind}
        for (_, kind), count in items:
            by_kind[kind.value] += count
        return {"total_errors": sum(c for _, c in items), "by_kind": by_kind}
