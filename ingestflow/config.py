from __future__ import annotations

import copy
import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import jsonschema
import yaml

from .cron import CronSchedule
from .errors import ConfigError

__all__ = [
    "AppConfig",
    "ConfigError",
    "DEFAULT_CONFIG",
    "HealthCheckConfig",
    "MaintenanceConfig",
    "PipelineConfig",
    "RateLimitConfig",
    "ScheduleConfig",
    "SchedulerConfig",
    "SourceConfig",
    "build_config",
    "load_config",
    "schedule_from_dict",
]

_TIME_OF_DAY = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


@dataclass(frozen=True)
class PipelineConfig:
    batch_size: int = 10
    max_concurrent_sources: int = 2
    enable_duplicate_detection: bool = True
    enable_data_update: bool = False
    skip_translation_on_error: bool = True

    def __post_init__(self) -> None:
        if self.batch_size <= 0:
            raise ConfigError("pipeline.batch_size must be greater than 0")
        if self.max_concurrent_sources <= 0:
            raise ConfigError("pipeline.max_concurrent_sources must be greater than 0")


@dataclass(frozen=True)
class RateLimitConfig:
    requests_per_minute: int = 30
    burst_limit: int = 5

    def __post_init__(self) -> None:
        if self.requests_per_minute <= 0:
            raise ConfigError("rate_limit.requests_per_minute must be greater than 0")
        if self.burst_limit <= 0 or self.burst_limit > self.requests_per_minute:
            raise ConfigError("rate_limit.burst_limit must be in 1..requests_per_minute")


@dataclass(frozen=True)
class SourceConfig:
    source_id: str
    collector: str = "json_api"
    url: str = ""
    params: Dict[str, Any] = field(default_factory=dict)
    items_path: str = ""
    key_field: str = "url"
    timeout_seconds: float = 20.0
    max_retries: int = 2
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    items: Tuple[Dict[str, Any], ...] = ()


@dataclass(frozen=True)
class ScheduleConfig:
    cron_expression: str
    enabled: bool = True
    timezone: str = "UTC"
    sources: Tuple[str, ...] = ()
    health_check_enabled: bool = True
    notifications_enabled: bool = True


@dataclass(frozen=True)
class HealthCheckConfig:
    enabled: bool = True
    timeout_ms: int = 30_000
    retry_attempts: int = 3
    retry_delay_ms: int = 5_000
    metrics_window_secs: int = 3_600
    min_collect_success_rate: float = 0.5


@dataclass(frozen=True)
class MaintenanceConfig:
    enabled: bool = False
    start: str = "01:00"
    end: str = "02:00"
    timezone: str = "UTC"


@dataclass(frozen=True)
class SchedulerConfig:
    schedules: Dict[str, ScheduleConfig] = field(default_factory=dict)
    health_check: HealthCheckConfig = field(default_factory=HealthCheckConfig)
    maintenance: MaintenanceConfig = field(default_factory=MaintenanceConfig)


@dataclass(frozen=True)
class AppConfig:
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    sources: Dict[str, SourceConfig] = field(default_factory=dict)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    store_path: str = ""


DEFAULT_CONFIG: Dict[str, Any] = {
    "store": {"path": ""},
    "pipeline": {
        "batch_size": 10,
        "max_concurrent_sources": 2,
        "enable_duplicate_detection": True,
        "enable_data_update": False,
        "skip_translation_on_error": True,
    },
    "sources": {},
    "scheduler": {
        "schedules": {},
        "health_check": {
            "enabled": True,
            "timeout_ms": 30_000,
            "retry_attempts": 3,
            "retry_delay_ms": 5_000,
            "metrics_window_secs": 3_600,
            "min_collect_success_rate": 0.5,
        },
        "maintenance": {
            "enabled": False,
            "start": "01:00",
            "end": "02:00",
            "timezone": "UTC",
        },
    },
}

_RATE_LIMIT_SCHEMA = {
    "type": "object",
    "properties": {
        "requests_per_minute": {"type": "integer", "minimum": 1},
        "burst_limit": {"type": "integer", "minimum": 1},
    },
    "additionalProperties": False,
}

CONFIG_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "store": {
            "type": "object",
            "properties": {"path": {"type": "string"}},
            "additionalProperties": False,
        },
        "pipeline": {
            "type": "object",
            "properties": {
                "batch_size": {"type": "integer", "minimum": 1},
                "max_concurrent_sources": {"type": "integer", "minimum": 1},
                "enable_duplicate_detection": {"type": "boolean"},
                "enable_data_update": {"type": "boolean"},
                "skip_translation_on_error": {"type": "boolean"},
            },
            "additionalProperties": False,
        },
        "sources": {
            "type": "object",
            "additionalProperties": {
                "type": "object",
                "properties": {
                    "collector": {"type": "string", "enum": ["json_api", "static"]},
                    "url": {"type": "string"},
                    "params": {"type": "object"},
                    "items_path": {"type": "string"},
                    "key_field": {"type": "string", "minLength": 1},
                    "timeout_seconds": {"type": "number", "exclusiveMinimum": 0},
                    "max_retries": {"type": "integer", "minimum": 0},
                    "rate_limit": _RATE_LIMIT_SCHEMA,
                    "items": {"type": "array", "items": {"type": "object"}},
                },
                "additionalProperties": False,
            },
        },
        "scheduler": {
            "type": "object",
            "properties": {
                "schedules": {
                    "type": "object",
                    "additionalProperties": {
                        "type": "object",
                        "properties": {
                            "enabled": {"type": "boolean"},
                            "cron_expression": {"type": "string", "minLength": 1},
                            "timezone": {"type": "string"},
                            "sources": {"type": "array", "items": {"type": "string"}},
                            "health_check_enabled": {"type": "boolean"},
                            "notifications_enabled": {"type": "boolean"},
                        },
                        "required": ["cron_expression"],
                        "additionalProperties": False,
                    },
                },
                "health_check": {
                    "type": "object",
                    "properties": {
                        "enabled": {"type": "boolean"},
                        "timeout_ms": {"type": "integer", "minimum": 1},
                        "retry_attempts": {"type": "integer", "minimum": 1},
                        "retry_delay_ms": {"type": "integer", "minimum": 0},
                        "metrics_window_secs": {"type": "integer", "minimum": 1},
                        "min_collect_success_rate": {"type": "number", "minimum": 0, "maximum": 1},
                    },
                    "additionalProperties": False,
                },
                "maintenance": {
                    "type": "object",
                    "properties": {
                        "enabled": {"type": "boolean"},
                        "start": {"type": "string"},
                        "end": {"type": "string"},
                        "timezone": {"type": "string"},
                    },
                    "additionalProperties": False,
                },
            },
            "additionalProperties": False,
        },
    },
    "additionalProperties": False,
}


def load_config(path: Optional[str] = None, env: Optional[Mapping[str, str]] = None) -> AppConfig:
    """Load a YAML config file (defaults only when ``path`` is None)."""
    raw: Dict[str, Any] = {}
    if path:
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
        except FileNotFoundError as exc:
            raise ConfigError(f"config file not found: {path}") from exc
        except yaml.YAMLError as exc:
            raise ConfigError(f"invalid YAML in {path}: {exc}") from exc
    return build_config(raw, env)


def build_config(raw: Mapping[str, Any], env: Optional[Mapping[str, str]] = None) -> AppConfig:
    if not isinstance(raw, Mapping):
        raise ConfigError("config root must be a mapping")
    validator = jsonschema.Draft7Validator(CONFIG_SCHEMA)
    problems = [
        f"{'.'.join(str(p) for p in err.absolute_path) or '<root>'}: {err.message}"
        for err in sorted(validator.iter_errors(raw), key=lambda e: list(e.absolute_path))
    ]
    if problems:
        raise ConfigError("Invalid config: " + "; ".join(problems))

    cfg = _deep_merge(DEFAULT_CONFIG, raw)
    _apply_env_overrides(cfg, os.environ if env is None else env)
    return _build(cfg)


def schedule_from_dict(value: Mapping[str, Any]) -> ScheduleConfig:
    """Build a ScheduleConfig from a plain mapping (config file or API payload)."""
    if "cron_expression" not in value:
        raise ConfigError("schedule requires cron_expression")
    timezone = str(value.get("timezone", "UTC"))
    _check_timezone(timezone, "schedule.timezone")
    CronSchedule.parse(str(value["cron_expression"]))
    return ScheduleConfig(
        cron_expression=str(value["cron_expression"]),
        enabled=bool(value.get("enabled", True)),
        timezone=timezone,
        sources=tuple(str(s) for s in value.get("sources") or ()),
        health_check_enabled=bool(value.get("health_check_enabled", True)),
        notifications_enabled=bool(value.get("notifications_enabled", True)),
    )


def _build(cfg: Dict[str, Any]) -> AppConfig:
    errors: list[str] = []

    pipeline = PipelineConfig(**cfg["pipeline"])

    sources: Dict[str, SourceConfig] = {}
    for source_id, raw in cfg["sources"].items():
        try:
            rate_limit = RateLimitConfig(**(raw.get("rate_limit") or {}))
        except ConfigError as exc:
            errors.append(f"sources.{source_id}: {exc}")
            continue
        collector = raw.get("collector", "json_api")
        if collector == "json_api" and not raw.get("url"):
            errors.append(f"sources.{source_id}: url is required for json_api collectors")
        sources[source_id] = SourceConfig(
            source_id=source_id,
            collector=collector,
            url=raw.get("url", ""),
            params=dict(raw.get("params") or {}),
            items_path=raw.get("items_path", ""),
            key_field=raw.get("key_field", "url"),
            timeout_seconds=float(raw.get("timeout_seconds", 20.0)),
            max_retries=int(raw.get("max_retries", 2)),
            rate_limit=rate_limit,
            items=tuple(raw.get("items") or ()),
        )

    scheduler_cfg = cfg["scheduler"]
    schedules: Dict[str, ScheduleConfig] = {}
    for name, raw in scheduler_cfg["schedules"].items():
        try:
            schedule = schedule_from_dict(raw)
        except ConfigError as exc:
            errors.append(f"scheduler.schedules.{name}: {exc}")
            continue
        missing = [s for s in schedule.sources if s not in sources]
        if missing:
            errors.append(f"scheduler.schedules.{name}: unknown sources {missing}")
        schedules[name] = schedule

    maintenance_raw = scheduler_cfg["maintenance"]
    for key in ("start", "end"):
        if not _TIME_OF_DAY.match(maintenance_raw[key]):
            errors.append(f"scheduler.maintenance.{key} must be HH:MM")
    try:
        _check_timezone(maintenance_raw["timezone"], "scheduler.maintenance.timezone")
    except ConfigError as exc:
        errors.append(str(exc))

    if errors:
        raise ConfigError("Invalid config: " + "; ".join(errors))

    return AppConfig(
        pipeline=pipeline,
        sources=sources,
        scheduler=SchedulerConfig(
            schedules=schedules,
            health_check=HealthCheckConfig(**scheduler_cfg["health_check"]),
            maintenance=MaintenanceConfig(**maintenance_raw),
        ),
        store_path=cfg["store"]["path"],
    )


def _apply_env_overrides(cfg: Dict[str, Any], env: Mapping[str, str]) -> None:
    if env.get("INGESTFLOW_STORE_PATH"):
        cfg["store"]["path"] = env["INGESTFLOW_STORE_PATH"]
    if env.get("INGESTFLOW_SCHEDULE_TIMEZONE"):
        for schedule in cfg["scheduler"]["schedules"].values():
            schedule["timezone"] = env["INGESTFLOW_SCHEDULE_TIMEZONE"]
    health = cfg["scheduler"]["health_check"]
    if env.get("INGESTFLOW_HEALTH_CHECK_ENABLED"):
        health["enabled"] = env["INGESTFLOW_HEALTH_CHECK_ENABLED"].lower() == "true"
    if env.get("INGESTFLOW_HEALTH_CHECK_TIMEOUT_MS"):
        try:
            health["timeout_ms"] = int(env["INGESTFLOW_HEALTH_CHECK_TIMEOUT_MS"])
        except ValueError as exc:
            raise ConfigError("INGESTFLOW_HEALTH_CHECK_TIMEOUT_MS must be an integer") from exc
    if env.get("INGESTFLOW_MAINTENANCE_ENABLED"):
        cfg["scheduler"]["maintenance"]["enabled"] = env["INGESTFLOW_MAINTENANCE_ENABLED"].lower() == "true"


def _check_timezone(name: str, path: str) -> None:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"{path}: unknown timezone {name!r}") from exc


def _deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(dict(base))
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict) and merged[key]:
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged
