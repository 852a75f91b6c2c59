from __future__ import annotations

import json
import os
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Optional

from feedcore import constants as C
from feedcore.errors import ConfigError

CONFIG_DIR = Path.home() / ".config" / "feedcore"
CONFIG_FILE = CONFIG_DIR / "config.json"
ENV_PREFIX = "FEEDCORE_"

PRIORITIES = ("high", "medium", "low")


def load_config(path: Optional[Path] = None) -> dict:
    config_file = path or CONFIG_FILE
    if not config_file.exists():
        return {}
    try:
        with open(config_file, "r") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Unreadable config file {config_file}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {config_file} must hold a JSON object")
    return data


def save_config(key: str, value: Any, path: Optional[Path] = None) -> None:
    config_file = path or CONFIG_FILE
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config = load_config(config_file)
    config[key] = value
    with open(config_file, "w") as f:
        json.dump(config, f, indent=2)


@dataclass(frozen=True)
class Settings:
    """Operator-tunable knobs for every stage of the pipeline."""

    priority_intervals: dict[str, float] = field(
        default_factory=lambda: dict(C.PRIORITY_INTERVAL_HOURS)
    )
    high_priority_sources: tuple[str, ...] = tuple(C.HIGH_PRIORITY_SOURCES)
    scheduler_batch_limit: int = C.SCHEDULER_BATCH_LIMIT
    error_backoff_multiplier: float = C.ERROR_BACKOFF_MULTIPLIER
    error_backoff_max_hours: float = C.ERROR_BACKOFF_MAX_HOURS
    feed_error_threshold: int = C.FEED_ERROR_THRESHOLD

    sync_concurrency: int = C.SYNC_CONCURRENCY
    sync_fetch_timeout: float = C.SYNC_FETCH_TIMEOUT
    sync_max_items: int = C.SYNC_MAX_ITEMS

    embedding_max_attempts: int = C.EMBEDDING_MAX_ATTEMPTS
    embedding_drain_batch_size: int = C.EMBEDDING_DRAIN_BATCH_SIZE
    embedding_drain_concurrency: int = C.EMBEDDING_DRAIN_CONCURRENCY
    embedding_daily_limit: int = C.EMBEDDING_DAILY_LIMIT
    embedding_api_base: str = C.EMBEDDING_API_BASE
    embedding_api_key_env: str = C.EMBEDDING_API_KEY_ENV
    embedding_model: str = C.EMBEDDING_MODEL
    embedding_dimensions: int = C.EMBEDDING_DIMENSIONS
    embedding_requests_per_second: float = C.EMBEDDING_REQUESTS_PER_SECOND

    llm_api_base: str = C.LLM_API_BASE
    llm_api_key_env: str = C.LLM_API_KEY_ENV
    llm_label_model: str = C.LLM_LABEL_MODEL

    cluster_similarity_threshold: float = C.CLUSTER_SIMILARITY_THRESHOLD
    keyword_overlap_min: int = C.KEYWORD_OVERLAP_MIN
    min_cluster_sources: int = C.MIN_CLUSTER_SOURCES
    min_cluster_articles: int = C.MIN_CLUSTER_ARTICLES
    cluster_time_window_hours: float = C.CLUSTER_TIME_WINDOW_HOURS
    cluster_expiry_buffer_hours: float = C.CLUSTER_EXPIRY_BUFFER_HOURS

    similar_articles_threshold: float = C.SIMILAR_ARTICLES_THRESHOLD
    similar_articles_max_results: int = C.SIMILAR_ARTICLES_MAX_RESULTS
    similar_articles_cache_ttl: float = C.SIMILAR_ARTICLES_CACHE_TTL

    store_path: str = C.STORE_PATH

    def __post_init__(self) -> None:
        validate_settings(self)

    def interval_hours(self, priority: str) -> float:
        return self.priority_intervals[priority]


def validate_settings(settings: Settings) -> None:
    unknown = set(settings.priority_intervals) - set(PRIORITIES)
    missing = set(PRIORITIES) - set(settings.priority_intervals)
    if unknown or missing:
        raise ConfigError(
            f"priority_intervals must define exactly {PRIORITIES}; "
            f"unknown={sorted(unknown)} missing={sorted(missing)}"
        )
    for tier, hours in settings.priority_intervals.items():
        if hours <= 0:
            raise ConfigError(f"Interval for {tier!r} must be positive, got {hours}")

    for name in (
        "cluster_similarity_threshold",
        "similar_articles_threshold",
    ):
        value = getattr(settings, name)
        if not 0.0 <= value <= 1.0:
            raise ConfigError(f"{name} must be within [0, 1], got {value}")

    for name in (
        "scheduler_batch_limit",
        "feed_error_threshold",
        "sync_concurrency",
        "embedding_max_attempts",
        "embedding_drain_batch_size",
        "embedding_drain_concurrency",
        "embedding_dimensions",
        "min_cluster_sources",
        "min_cluster_articles",
        "similar_articles_max_results",
    ):
        if getattr(settings, name) < 1:
            raise ConfigError(f"{name} must be >= 1")

    if settings.error_backoff_multiplier < 1.0:
        raise ConfigError("error_backoff_multiplier must be >= 1")
    if settings.embedding_daily_limit < 0:
        raise ConfigError("embedding_daily_limit must be >= 0")


def _coerce(current: Any, raw: Any, name: str) -> Any:
    if isinstance(current, bool):
        if isinstance(raw, str):
            return raw.strip().lower() in {"1", "true", "yes", "on"}
        return bool(raw)
    try:
        if isinstance(current, int):
            return int(raw)
        if isinstance(current, float):
            return float(raw)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value for {name}: {raw!r}") from e
    if isinstance(current, dict):
        if isinstance(raw, str):
            try:
                raw = json.loads(raw)
            except json.JSONDecodeError as e:
                raise ConfigError(f"Invalid value for {name}: {raw!r}") from e
        if not isinstance(raw, dict):
            raise ConfigError(f"{name} must be a mapping")
        merged = dict(current)
        try:
            merged.update({str(k): float(v) for k, v in raw.items()})
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid value for {name}: {raw!r}") from e
        return merged
    if isinstance(current, tuple):
        if isinstance(raw, str):
            return tuple(part.strip() for part in raw.split(",") if part.strip())
        return tuple(raw)
    return str(raw)


def load_settings(
    path: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
) -> Settings:
    """Build settings from defaults, the JSON config file, then FEEDCORE_* env vars."""
    env = os.environ if env is None else env
    base = Settings()
    overrides: dict[str, Any] = {}

    file_values = load_config(path)
    known = {f.name for f in fields(Settings)}
    for key, raw in file_values.items():
        if key in known:
            overrides[key] = _coerce(getattr(base, key), raw, key)

    for f in fields(Settings):
        env_key = ENV_PREFIX + f.name.upper()
        if env_key in env:
            current = overrides.get(f.name, getattr(base, f.name))
            overrides[f.name] = _coerce(current, env[env_key], env_key)

    return replace(base, **overrides) if overrides else base
