from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List

from .models import CandidateRecord, TranslatedRecord, TranslationStatus


class TranslatorBase(ABC):
    """Contract for the translation provider consumed by the pipeline.

    Provider protocols, batching and caching internals live behind this
    interface."""

    def initialize(self) -> None:
        """Prepare provider resources; raising aborts pipeline initialization."""

    @abstractmethod
    def translate_batch(self, records: List[CandidateRecord]) -> List[TranslatedRecord]:
        ...

    @abstractmethod
    def get_cache_stats(self) -> Dict[str, Any]:
        ...

    def cleanup(self) -> None:
        """Release provider resources."""


class PassthroughTranslator(TranslatorBase):
    """Returns every record untouched with status COMPLETE.

    Used when the source language is already the target language and as a
    stand-in provider for local runs."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._seen: Dict[str, Dict[str, Any]] = {}
        self._hits = 0
        self._misses = 0
        self._initialized = False

    def initialize(self) -> None:
        self._initialized = True

    def translate_batch(self, records: List[CandidateRecord]) -> List[TranslatedRecord]:
        out: List[TranslatedRecord] = []
        with self._lock:
            for record in records:
                if record.key in self._seen and self._seen[record.key] == record.payload:
                    self._hits += 1
                else:
                    self._misses += 1
                    self._seen[record.key] = dict(record.payload)
                out.append(TranslatedRecord(record=record, fields=dict(record.payload), status=TranslationStatus.COMPLETE))
        return out

    def get_cache_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "initialized": self._initialized,
                "entries": len(self._seen),
                "hits": self._hits,
                "misses": self._misses,
            }

    def cleanup(self) -> None:
        with self._lock:
            self._seen.clear()
