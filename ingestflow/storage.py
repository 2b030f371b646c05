from __future__ import annotations

import json
import os
import queue
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from .errors import ErrorKind, PipelineError
from .models import StoredRecord, StoreStats, TranslatedRecord


class StoreBase(ABC):
    """Abstract base class for all record stores.

    Records are addressed by their natural key (the origin URL)."""

    @abstractmethod
    def find_by_key(self, key: str) -> Optional[Dict[str, Any]]:
        """Return the stored document for ``key`` or None."""

    @abstractmethod
    def upsert(self, record: TranslatedRecord) -> StoredRecord:
        """Insert or replace the document for ``record.key``."""

    @abstractmethod
    def get_stats(self) -> StoreStats:
        """Aggregate counts; also used as the persistence health probe."""

    @abstractmethod
    def close(self) -> None:
        """Flush pending writes and release resources."""


def _document(record: TranslatedRecord) -> Dict[str, Any]:
    return {
        "key": record.key,
        "source_id": record.record.source_id,
        "payload": record.record.payload,
        "fields": record.fields,
        "translation_status": record.status.value,
        "fetched_at": record.record.fetched_at,
        "stored_at": time.time(),
    }


class MemoryStore(StoreBase):
    """Thread-safe in-process store."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._docs: Dict[str, Dict[str, Any]] = {}
        self._last_updated: Optional[float] = None

    def find_by_key(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            doc = self._docs.get(key)
            return dict(doc) if doc is not None else None

    def upsert(self, record: TranslatedRecord) -> StoredRecord:
        doc = _document(record)
        with self._lock:
            created = record.key not in self._docs
            self._docs[record.key] = doc
            self._last_updated = doc["stored_at"]
        return StoredRecord(key=record.key, created=created)

    def get_stats(self) -> StoreStats:
        with self._lock:
            by_source: Dict[str, int] = {}
            for doc in self._docs.values():
                by_source[doc["source_id"]] = by_source.get(doc["source_id"], 0) + 1
            return StoreStats(
                total_records=len(self._docs),
                by_source=by_source,
                last_updated=self._last_updated,
            )

    def close(self) -> None:
        pass


class JsonlStore(MemoryStore):
    """Stores records as JSON Lines (.jsonl) using a background writer thread.

    The file is append-only; the latest line for a key wins when the index is
    rebuilt on open."""

    def __init__(self, path: str) -> None:
        super().__init__()
        self._path = path
        self._closed = False
        self._load()
        self._queue: queue.Queue[Optional[Dict[str, Any]]] = queue.Queue()
        self._thread = threading.Thread(target=self._writer, name="jsonl-store-writer", daemon=True)
        self._thread.start()

    def upsert(self, record: TranslatedRecord) -> StoredRecord:
        if self._closed:
            raise PipelineError("store is closed", ErrorKind.DATABASE, context={"path": self._path})
        stored = super().upsert(record)
        with self._lock:
            doc = dict(self._docs[record.key])
        self._queue.put(doc)
        return stored

    def close(self) -> None:
        """Signal the writer thread to flush and stop."""
        if self._closed:
            return
        self._closed = True
        self._queue.put(None)
        self._thread.join(timeout=5)

    def _load(self) -> None:
        if not os.path.exists(self._path):
            directory = os.path.dirname(self._path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            return
        with open(self._path, "r", encoding="utf-8") as f:
            for line_no, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    doc = json.loads(line)
                except json.JSONDecodeError as exc:
                    raise PipelineError(
                        f"corrupt store line {line_no}",
                        ErrorKind.DATABASE,
                        cause=exc,
                        context={"path": self._path},
                    ) from exc
                try:
                    key = doc["key"]
                except (KeyError, TypeError) as exc:
                    raise PipelineError(
                        f"store line {line_no} has no key",
                        ErrorKind.DATABASE,
                        cause=exc,
                        context={"path": self._path},
                    ) from exc
                self._docs[key] = doc
                self._last_updated = doc.get("stored_at", self._last_updated)

    def _writer(self) -> None:
        with open(self._path, "a", encoding="utf-8") as f:
            while True:
                item = self._queue.get()
                if item is None:
                    break
                f.write(json.dumps(item, ensure_ascii=False, default=str) + "\n")
                f.flush()
