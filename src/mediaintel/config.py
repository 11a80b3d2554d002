from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any

import yaml

from .errors import ConfigError
from .models import Lane, RetryPolicy, SourceStatus, SourceType


@dataclass(frozen=True)
class PathsConfig:
    data_dir: str
    state_db: str


@dataclass(frozen=True)
class UrlNormalizationConfig:
    strip_tracking_params: bool
    tracking_params: list[str]


@dataclass(frozen=True)
class FetchConfig:
    timeout_seconds: int
    user_agent: str
    max_retries: int
    backoff_seconds: float
    min_content_length: int
    url_normalization: UrlNormalizationConfig


@dataclass(frozen=True)
class LaneConfig:
    concurrency: int
    max_attempts: int
    backoff_seconds: float

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(max_attempts=self.max_attempts, backoff_seconds=self.backoff_seconds)


@dataclass(frozen=True)
class QueueConfig:
    lease_timeout_seconds: int
    poll_seconds: float
    lanes: dict[str, LaneConfig]

    def lane(self, name: str) -> LaneConfig:
        try:
            return self.lanes[name]
        except KeyError as exc:
            raise ConfigError(f"no configuration for lane {name}") from exc


@dataclass(frozen=True)
class LLMConfig:
    provider: str
    base_url: str
    api_key: str
    model: str
    timeout_seconds: int
    temperature: float
    max_tokens: int


@dataclass(frozen=True)
class AnalyzerConfig:
    max_input_chars: int
    batch_size: int
    batch_concurrency: int
    batch_delay_seconds: float
    llm: LLMConfig


@dataclass(frozen=True)
class TrendsConfig:
    window_hours: int
    top_k: int
    min_score: float
    retire_after_windows: int
    languages: list[str]
    interval_seconds: int


@dataclass(frozen=True)
class SchedulerConfig:
    enabled: bool
    tick_seconds: float


@dataclass(frozen=True)
class Config:
    paths: PathsConfig
    fetch: FetchConfig
    queue: QueueConfig
    analyzer: AnalyzerConfig
    trends: TrendsConfig
    scheduler: SchedulerConfig


DEFAULT_CONFIG: dict[str, Any] = {
    "paths": {
        "data_dir": "./data",
        "state_db": "",
    },
    "fetch": {
        "timeout_seconds": 30,
        "user_agent": "media-intel/0.1",
        "max_retries": 3,
        "backoff_seconds": 5.0,
        "min_content_length": 100,
        "url_normalization": {
            "strip_tracking_params": True,
            "tracking_params": [
                "utm_source",
                "utm_medium",
                "utm_campaign",
                "utm_term",
                "utm_content",
                "fbclid",
                "gclid",
            ],
        },
    },
    "queue": {
        "lease_timeout_seconds": 600,
        "poll_seconds": 1.0,
        "lanes": {
            "scrape": {"concurrency": 5, "max_attempts": 3, "backoff_seconds": 5.0},
            "analyze": {"concurrency": 3, "max_attempts": 3, "backoff_seconds": 3.0},
            "trend": {"concurrency": 1, "max_attempts": 1, "backoff_seconds": 0.0},
        },
    },
    "analyzer": {
        "max_input_chars": 5000,
        "batch_size": 10,
        "batch_concurrency": 3,
        "batch_delay_seconds": 1.0,
        "llm": {
            "provider": "openai_compatible",
            "base_url": "",
            "api_key": "",
            "model": "gpt-4o-mini",
            "timeout_seconds": 60,
            "temperature": 0.2,
            "max_tokens": 1024,
        },
    },
    "trends": {
        "window_hours": 6,
        "top_k": 5,
        "min_score": 2.0,
        "retire_after_windows": 1,
        "languages": ["fa", "en"],
        "interval_seconds": 300,
    },
    "scheduler": {
        "enabled": True,
        "tick_seconds": 5.0,
    },
}

_ENV_OVERRIDES = {
    "MI_DATA_DIR": ("paths", "data_dir"),
    "MI_LLM_PROVIDER": ("analyzer", "llm", "provider"),
    "MI_LLM_BASE_URL": ("analyzer", "llm", "base_url"),
    "MI_LLM_API_KEY": ("analyzer", "llm", "api_key"),
    "MI_LLM_MODEL": ("analyzer", "llm", "model"),
}

LLM_PROVIDERS = ("openai_compatible", "anthropic", "google")


def load_config(path: str | None = None) -> Config:
    """Read YAML configuration over the defaults and environment overrides.

    ``path`` falls back to ``MI_CONFIG_PATH``; a missing file means defaults.
    """
    cfg = _deep_copy(DEFAULT_CONFIG)
    config_path = path or os.environ.get("MI_CONFIG_PATH")
    if config_path and os.path.exists(config_path):
        loaded = _read_yaml(config_path)
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ConfigError(f"{config_path} must contain a mapping")
        cfg = _deep_merge(cfg, loaded)
    elif path:
        raise ConfigError(f"config file not found: {path}")
    _apply_env_overrides(cfg)
    errors = validate_config(cfg)
    if errors:
        raise ConfigError("Invalid config: " + "; ".join(errors))
    return _build_config(cfg)


def validate_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config", errors)
    if errors:
        return errors
    llm = cfg["analyzer"]["llm"]
    if llm["provider"] not in LLM_PROVIDERS:
        errors.append(
            f"config.analyzer.llm.provider must be one of {', '.join(LLM_PROVIDERS)}"
        )
    for lane, lane_cfg in cfg["queue"]["lanes"].items():
        if lane_cfg["concurrency"] < 1:
            errors.append(f"config.queue.lanes.{lane}.concurrency must be >= 1")
        if lane_cfg["max_attempts"] < 1:
            errors.append(f"config.queue.lanes.{lane}.max_attempts must be >= 1")
    trends = cfg["trends"]
    if trends["window_hours"] < 1:
        errors.append("config.trends.window_hours must be >= 1")
    if trends["top_k"] < 1:
        errors.append("config.trends.top_k must be >= 1")
    if trends["retire_after_windows"] < 1:
        errors.append("config.trends.retire_after_windows must be >= 1")
    if cfg["analyzer"]["batch_size"] < 1:
        errors.append("config.analyzer.batch_size must be >= 1")
    return errors


def load_sources_file(path: str) -> list[dict[str, object]]:
    if not os.path.exists(path):
        raise ConfigError(f"sources file not found: {path}")
    data = _read_yaml(path)
    if isinstance(data, dict):
        data = data.get("sources")
    if not isinstance(data, list):
        raise ConfigError(f"{path} must contain a list of sources")
    sources: list[dict[str, object]] = []
    seen: set[str] = set()
    for index, item in enumerate(data):
        if not isinstance(item, dict):
            raise ConfigError(f"sources[{index}] must be a mapping")
        source_id = str(item.get("id") or "").strip()
        if not source_id:
            raise ConfigError(f"sources[{index}].id is required")
        if source_id in seen:
            raise ConfigError(f"duplicate source id {source_id}")
        seen.add(source_id)
        if not item.get("url"):
            raise ConfigError(f"sources[{index}].url is required")
        source_type = item.get("type", SourceType.RSS.value)
        if source_type not in {member.value for member in SourceType}:
            raise ConfigError(f"sources[{index}].type {source_type} is not supported")
        status = item.get("status", SourceStatus.ACTIVE.value)
        if status not in {member.value for member in SourceStatus}:
            raise ConfigError(f"sources[{index}].status {status} is not valid")
        sources.append(dict(item))
    return sources


def _read_yaml(path: str) -> Any:
    with open(path, "r", encoding="utf-8") as handle:
        try:
            return yaml.safe_load(handle)
        except yaml.YAMLError as exc:
            raise ConfigError(f"invalid YAML in {path}: {exc}") from exc


def _apply_env_overrides(cfg: dict[str, Any]) -> None:
    for env_name, keys in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if not value:
            continue
        target = cfg
        for key in keys[:-1]:
            target = target[key]
        target[keys[-1]] = value


def _validate_dict(value: dict[str, Any], schema: dict[str, Any], path: str, errors: list[str]) -> None:
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    for key in schema.keys():
        if key not in value:
            errors.append(f"missing {path}.{key}")
    for key in value.keys():
        if key not in schema:
            errors.append(f"unknown {path}.{key}")
    for key, default in schema.items():
        if key not in value:
            continue
        _validate_value(value[key], default, f"{path}.{key}", errors)


def _validate_value(value: Any, default: Any, path: str, errors: list[str]) -> None:
    if isinstance(default, dict):
        if not isinstance(value, dict):
            errors.append(f"{path} must be an object")
            return
        _validate_dict(value, default, path, errors)
        return
    if isinstance(default, list):
        if not isinstance(value, list) or any(not isinstance(item, str) for item in value):
            errors.append(f"{path} must be a list of strings")
        return
    if isinstance(default, bool):
        if not isinstance(value, bool):
            errors.append(f"{path} must be a boolean")
        return
    if isinstance(default, int):
        if not isinstance(value, int) or isinstance(value, bool):
            errors.append(f"{path} must be an integer")
        return
    if isinstance(default, float):
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            errors.append(f"{path} must be a number")
        return
    if isinstance(default, str):
        if not isinstance(value, str):
            errors.append(f"{path} must be a string")
        return


def _build_config(cfg: dict[str, Any]) -> Config:
    paths_cfg = cfg["paths"]
    fetch_cfg = cfg["fetch"]
    queue_cfg = cfg["queue"]
    analyzer_cfg = cfg["analyzer"]
    trends_cfg = cfg["trends"]
    scheduler_cfg = cfg["scheduler"]

    data_dir = str(paths_cfg["data_dir"])
    paths = PathsConfig(
        data_dir=data_dir,
        state_db=str(paths_cfg["state_db"] or os.path.join(data_dir, "state.sqlite3")),
    )

    url_norm_cfg = fetch_cfg["url_normalization"]
    fetch = FetchConfig(
        timeout_seconds=int(fetch_cfg["timeout_seconds"]),
        user_agent=str(fetch_cfg["user_agent"]),
        max_retries=int(fetch_cfg["max_retries"]),
        backoff_seconds=float(fetch_cfg["backoff_seconds"]),
        min_content_length=int(fetch_cfg["min_content_length"]),
        url_normalization=UrlNormalizationConfig(
            strip_tracking_params=bool(url_norm_cfg["strip_tracking_params"]),
            tracking_params=list(url_norm_cfg["tracking_params"]),
        ),
    )

    lanes = {
        lane.value: LaneConfig(
            concurrency=int(queue_cfg["lanes"][lane.value]["concurrency"]),
            max_attempts=int(queue_cfg["lanes"][lane.value]["max_attempts"]),
            backoff_seconds=float(queue_cfg["lanes"][lane.value]["backoff_seconds"]),
        )
        for lane in Lane
    }
    queue = QueueConfig(
        lease_timeout_seconds=int(queue_cfg["lease_timeout_seconds"]),
        poll_seconds=float(queue_cfg["poll_seconds"]),
        lanes=lanes,
    )

    llm_cfg = analyzer_cfg["llm"]
    analyzer = AnalyzerConfig(
        max_input_chars=int(analyzer_cfg["max_input_chars"]),
        batch_size=int(analyzer_cfg["batch_size"]),
        batch_concurrency=int(analyzer_cfg["batch_concurrency"]),
        batch_delay_seconds=float(analyzer_cfg["batch_delay_seconds"]),
        llm=LLMConfig(
            provider=str(llm_cfg["provider"]),
            base_url=str(llm_cfg["base_url"]),
            api_key=str(llm_cfg["api_key"]),
            model=str(llm_cfg["model"]),
            timeout_seconds=int(llm_cfg["timeout_seconds"]),
            temperature=float(llm_cfg["temperature"]),
            max_tokens=int(llm_cfg["max_tokens"]),
        ),
    )

    trends = TrendsConfig(
        window_hours=int(trends_cfg["window_hours"]),
        top_k=int(trends_cfg["top_k"]),
        min_score=float(trends_cfg["min_score"]),
        retire_after_windows=int(trends_cfg["retire_after_windows"]),
        languages=list(trends_cfg["languages"]),
        interval_seconds=int(trends_cfg["interval_seconds"]),
    )

    scheduler = SchedulerConfig(
        enabled=bool(scheduler_cfg["enabled"]),
        tick_seconds=float(scheduler_cfg["tick_seconds"]),
    )

    return Config(
        paths=paths,
        fetch=fetch,
        queue=queue,
        analyzer=analyzer,
        trends=trends,
        scheduler=scheduler,
    )


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value))
