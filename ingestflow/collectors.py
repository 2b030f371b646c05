from __future__ import annotations

import logging
import threading
import time as _time
from typing import Any, Dict, Iterable, List, Optional

import requests

from .backoff import BackoffStrategy
from .base import BaseCollector
from .errors import ErrorKind, PipelineError, RunCancelled, classify_exception, is_retryable
from .logging_utils import log_event
from .models import CandidateRecord

logger = logging.getLogger(__name__)

_STATUS_KINDS = {
    401: ErrorKind.AUTHENTICATION,
    403: ErrorKind.BLOCKED,
    408: ErrorKind.TIMEOUT,
    429: ErrorKind.RATE_LIMIT,
}


class JsonApiCollector(BaseCollector):
    """Collects records from a JSON HTTP endpoint.

    Every attempt waits on the source's rate limiter first. Retryable
    failures are retried up to ``max_retries`` times with backoff, so one
    fetch makes at most ``max_retries + 1`` requests; the item
    list is read from ``items_path`` (dotted) and each item's natural key from
    ``key_field``."""

    def __init__(
        self,
        url: str,
        backoff: BackoffStrategy,
        items_path: str = "",
        key_field: str = "url",
        method: str = "GET",
        headers: Optional[Dict[str, str]] = None,
        max_retries: int = 2,
        timeout: float = 20,
        session: Optional[requests.Session] = None,
        *args,
        **kwargs,
    ) -> None:
        super().__init__(*args, **kwargs)
        self._url = url
        self._backoff = backoff
        self._items_path = items_path
        self._key_field = key_field
        self._method = method.upper()
        self._headers = dict(headers or {})
        self._max_retries = max(0, max_retries)
        self._timeout = timeout
        self._session = session or requests.Session()

    def validate(self, source_id: str, params: Dict[str, Any]) -> None:
        super().validate(source_id, params)
        if not self._url:
            raise PipelineError("collector url is required", ErrorKind.CONFIGURATION)

    def fetch(self, source_id: str, params: Dict[str, Any], cancel: Optional[threading.Event]) -> Any:
        attempt = 0
        while True:
            attempt += 1
            self.wait_for_slot(cancel)
            try:
                response = self._session.request(
                    method=self._method,
                    url=self._url,
                    params=params or None,
                    headers=self._headers or None,
                    timeout=self._timeout,
                )
                self._raise_for_status(response)
                return response
            except Exception as exc:  # noqa: BLE001
                kind = classify_exception(exc)
                if attempt > self._max_retries or not is_retryable(kind):
                    raise
                sleep_s = self._backoff.get_sleep(attempt, kind)
                log_event(
                    logger,
                    logging.INFO,
                    "collect_retry",
                    source_id=source_id,
                    attempt=attempt,
                    kind=kind.value,
                    sleep_s=round(sleep_s, 1),
                )
                self._pause(sleep_s, cancel)

    def parse(self, source_id: str, response: Any) -> List[CandidateRecord]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise PipelineError("invalid json payload", ErrorKind.PARSING, cause=exc) from exc

        items = _dig(payload, self._items_path)
        if not isinstance(items, list):
            raise PipelineError(
                f"expected a list at '{self._items_path or '<root>'}'",
                ErrorKind.PARSING,
                context={"source_id": source_id},
            )
        return list(_to_records(source_id, items, self._key_field))

    def health_check(self) -> None:
        if not self._url:
            raise PipelineError("collector has no url", ErrorKind.CONFIGURATION)

    @staticmethod
    def _raise_for_status(response: Any) -> None:
        status = getattr(response, "status_code", None)
        if status is None or 200 <= int(status) < 300:
            return
        status = int(status)
        if status in _STATUS_KINDS:
            kind = _STATUS_KINDS[status]
        elif status >= 500:
            kind = ErrorKind.NETWORK
        else:
            kind = ErrorKind.SCRAPING
        raise PipelineError(f"HTTP {status}", kind, context={"status_code": status})

    @staticmethod
    def _pause(seconds: float, cancel: Optional[threading.Event]) -> None:
        if cancel is None:
            _time.sleep(seconds)
        elif cancel.wait(seconds):
            raise RunCancelled("collector retry cancelled")


class StaticCollector(BaseCollector):
    """Serves a fixed list of items; used for dry runs and local fixtures."""

    def __init__(self, items: Iterable[Dict[str, Any]], key_field: str = "url", *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._items = list(items)
        self._key_field = key_field

    def fetch(self, source_id: str, params: Dict[str, Any], cancel: Optional[threading.Event]) -> Any:
        self.wait_for_slot(cancel)
        return self._items

    def parse(self, source_id: str, response: Any) -> List[CandidateRecord]:
        return list(_to_records(source_id, response, self._key_field))


def _dig(payload: Any, path: str) -> Any:
    if not path:
        return payload
    current = payload
    for part in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


def _to_records(source_id: str, items: Iterable[Any], key_field: str) -> Iterable[CandidateRecord]:
    for item in items:
        if not isinstance(item, dict):
            continue
        key = item.get(key_field)
        if not key:
            log_event(logger, logging.DEBUG, "record_without_key", source_id=source_id, key_field=key_field)
            continue
        yield CandidateRecord(key=str(key), source_id=source_id, payload=dict(item))
