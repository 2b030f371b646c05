from __future__ import annotations

import threading
from typing import Any, Callable, Dict, Optional

import requests

from .backoff import BackoffStrategy
from .base import BaseCollector
from .collectors import JsonApiCollector, StaticCollector
from .config import SourceConfig
from .errors import ConfigError
from .metrics import MetricsCollector
from .rate_limiter import RateLimiter

CollectorBuilder = Callable[[SourceConfig, "CollectorFactory", RateLimiter], BaseCollector]


def _build_json_api(source: SourceConfig, factory: "CollectorFactory", limiter: RateLimiter) -> BaseCollector:
    return JsonApiCollector(
        url=source.url,
        backoff=factory.backoff,
        items_path=source.items_path,
        key_field=source.key_field,
        max_retries=source.max_retries,
        timeout=source.timeout_seconds,
        session=factory.session,
        rate_limiter=limiter,
        metrics=factory.metrics,
    )


def _build_static(source: SourceConfig, factory: "CollectorFactory", limiter: RateLimiter) -> BaseCollector:
    return StaticCollector(
        items=source.items,
        key_field=source.key_field,
        rate_limiter=limiter,
        metrics=factory.metrics,
    )


class CollectorFactory:
    """Builds one collector per source, each with its own RateLimiter.

    Instances are cached so a source keeps the same rate window across runs.
    """

    _registry: Dict[str, CollectorBuilder] = {
        "json_api": _build_json_api,
        "static": _build_static,
    }

    def __init__(
        self,
        sources: Dict[str, SourceConfig],
        metrics: Optional[MetricsCollector] = None,
        backoff: Optional[BackoffStrategy] = None,
        session: Optional[requests.Session] = None,
        limiter_kwargs: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._sources = dict(sources)
        self.metrics = metrics
        self.backoff = backoff or BackoffStrategy()
        self.session = session
        self._limiter_kwargs = dict(limiter_kwargs or {})
        self._lock = threading.Lock()
        self._cache: Dict[str, BaseCollector] = {}

    @classmethod
    def register(cls, collector_type: str, builder: CollectorBuilder) -> None:
        cls._registry = {**cls._registry, collector_type: builder}

    def create_collector(self, source_id: str) -> BaseCollector:
        with self._lock:
            if source_id in self._cache:
                return self._cache[source_id]

            source = self._sources.get(source_id)
            if source is None:
                raise ConfigError(f"Unknown source_id: {source_id}")
            builder = self._registry.get(source.collector)
            if builder is None:
                raise ConfigError(f"Unknown collector type {source.collector!r} for source {source_id}")

            limiter = RateLimiter.from_config(source.rate_limit, **self._limiter_kwargs)
            collector = builder(source, self, limiter)
            self._cache[source_id] = collector
            return collector

    def collectors_for(self, source_ids) -> Dict[str, BaseCollector]:
        return {source_id: self.create_collector(source_id) for source_id in source_ids}

    def source_ids(self):
        return list(self._sources)

    def source(self, source_id: str) -> SourceConfig:
        try:
            return self._sources[source_id]
        except KeyError:
            raise ConfigError(f"Unknown source_id: {source_id}") from None
