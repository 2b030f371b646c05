from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional

if TYPE_CHECKING:
    from .errors import PipelineError


class TranslationStatus(str, Enum):
    PENDING = "pending"
    COMPLETE = "complete"
    PARTIAL = "partial"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class CandidateRecord:
    """Raw item produced by a collector. ``key`` is the origin URL."""

    key: str
    source_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    fetched_at: float = field(default_factory=time.time)


@dataclass(frozen=True)
class TranslatedRecord:
    record: CandidateRecord
    fields: Dict[str, Any]
    status: TranslationStatus

    @property
    def key(self) -> str:
        return self.record.key


@dataclass(frozen=True)
class StoredRecord:
    key: str
    created: bool


@dataclass(frozen=True)
class StoreStats:
    total_records: int
    by_source: Dict[str, int]
    last_updated: Optional[float]


@dataclass(frozen=True)
class CollectResult:
    source_id: str
    success: bool
    records: List[CandidateRecord]
    errors: List["PipelineError"]
    latency_ms: int


@dataclass
class SiteProcessingResult:
    source_id: str
    scraped: int = 0
    translated: int = 0
    stored: int = 0
    created: int = 0
    updated: int = 0
    duplicates_skipped: int = 0
    errors: List["PipelineError"] = field(default_factory=list)
    elapsed_ms: int = 0

    @property
    def success(self) -> bool:
        return not self.errors


@dataclass
class PipelineResult:
    success: bool = True
    total_processed: int = 0
    new_records: int = 0
    updated_records: int = 0
    translated_records: int = 0
    stored_records: int = 0
    errors: List["PipelineError"] = field(default_factory=list)
    elapsed_ms: int = 0
    site_results: Dict[str, SiteProcessingResult] = field(default_factory=dict)


@dataclass(frozen=True)
class MetricsSnapshot:
    window_secs: int
    total_collects: int
    success_count: int
    record_count: int
    timeout_count: int
    rate_limited_count: int
    blocked_count: int
    avg_latency_ms: float
    timestamp: float

    @property
    def success_rate(self) -> Optional[float]:
        if not self.total_collects:
            return None
        return self.success_count / self.total_collects


@dataclass(frozen=True)
class RateLimiterStats:
    total_requests: int
    requests_in_last_minute: int
    requests_in_last_second: int
    can_make_request: bool
    next_available_slot_ms: int
