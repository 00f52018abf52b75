"""Configuration loading, validation, and access."""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from mandi_sync.core.exceptions import ConfigError
from mandi_sync.core.models import StorageBackend

DEFAULT_API_URL = (
    "https://api.data.gov.in/resource/35985678-0d79-46b4-9ed6-6f13308a1d24"
)

DEFAULT_HOURLY_STATES = (
    "Andhra Pradesh",
    "Telangana",
    "Karnataka",
    "Tamil Nadu",
    "Kerala",
    "Maharashtra",
    "Gujarat",
    "Rajasthan",
    "Punjab",
    "Haryana",
    "Uttar Pradesh",
    "Madhya Pradesh",
    "Bihar",
    "West Bengal",
    "Odisha",
)


def _split_csv(v: object) -> object:
    """Accept comma-separated strings (from env vars) for list fields."""
    if isinstance(v, str):
        items = [part.strip() for part in v.split(",")]
        return [item for item in items if item]
    return v


class SourceConfig(BaseModel):
    """data.gov.in price API access configuration."""

    model_config = ConfigDict(frozen=True)

    api_key: str
    base_url: str = DEFAULT_API_URL
    request_timeout: float = 15.0
    request_delay_ms: int = 200
    max_retries: int = 3
    retry_backoff_seconds: float = 1.0
    page_size: int = 1000
    max_records_per_date: int = 100_000
    date_batch_size: int = 10

    @field_validator("api_key")
    @classmethod
    def api_key_present(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("api_key must not be empty (set MANDI_SYNC_SOURCE__API_KEY)")
        return v.strip()

    @field_validator("base_url")
    @classmethod
    def url_must_be_http(cls, v: str) -> str:
        if not v.startswith(("https://", "http://")):
            raise ValueError("base_url must be an http(s) URL")
        return v

    @field_validator("request_delay_ms")
    @classmethod
    def delay_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("request_delay_ms must be >= 1")
        return v

    @field_validator("max_retries")
    @classmethod
    def retries_bounded(cls, v: int) -> int:
        if v < 0 or v > 10:
            raise ValueError("max_retries must be between 0 and 10")
        return v

    @field_validator("retry_backoff_seconds")
    @classmethod
    def backoff_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("retry_backoff_seconds must be >= 0")
        return v

    @field_validator("page_size", "date_batch_size")
    @classmethod
    def size_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v

    @model_validator(mode="after")
    def ceiling_covers_page(self) -> SourceConfig:
        if self.max_records_per_date < self.page_size:
            raise ValueError("max_records_per_date must be >= page_size")
        return self


class SyncConfig(BaseModel):
    """Orchestration settings shared by daily, bulk and hourly runs."""

    model_config = ConfigDict(frozen=True)

    chunk_size: int = 1000
    states: list[str] | None = None
    commodities: list[str] | None = None
    inter_date_delay_seconds: float = 1.0
    bulk_date_delay_seconds: float = 0.5
    health_window_days: int = 7
    daily_time: str = "00:30"
    timezone: str = "Asia/Kolkata"
    weekly_backfill_enabled: bool = True
    weekly_backfill_days: int = 7
    hourly_enabled: bool = False
    hourly_start_hour: int = 14
    hourly_end_hour: int = 22
    hourly_states: list[str] = list(DEFAULT_HOURLY_STATES)

    @field_validator("states", "commodities", "hourly_states", mode="before")
    @classmethod
    def split_lists(cls, v: object) -> object:
        return _split_csv(v)

    @field_validator("chunk_size", "health_window_days", "weekly_backfill_days")
    @classmethod
    def positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v

    @field_validator("inter_date_delay_seconds", "bulk_date_delay_seconds")
    @classmethod
    def delay_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("delay must be >= 0")
        return v

    @field_validator("daily_time")
    @classmethod
    def daily_time_format(cls, v: str) -> str:
        match = re.fullmatch(r"(\d{1,2}):(\d{2})", v.strip())
        if not match or int(match.group(1)) > 23 or int(match.group(2)) > 59:
            raise ValueError(f"daily_time must be HH:MM, got {v!r}")
        return v.strip()

    @model_validator(mode="after")
    def hourly_window_ordered(self) -> SyncConfig:
        if not 0 <= self.hourly_start_hour < self.hourly_end_hour <= 24:
            raise ValueError(
                "hourly window must satisfy 0 <= hourly_start_hour < hourly_end_hour <= 24"
            )
        return self

    @property
    def daily_hour_minute(self) -> tuple[int, int]:
        hours, minutes = self.daily_time.split(":")
        return int(hours), int(minutes)


class StorageConfig(BaseModel):
    """Storage backend configuration."""

    model_config = ConfigDict(frozen=True)

    backend: StorageBackend = StorageBackend.SQLITE
    sqlite_path: str = "./data/mandi_sync.db"


class RetentionConfig(BaseModel):
    """Old price data cleanup policy."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    days: int = 30
    batch_size: int = 10_000

    @field_validator("days", "batch_size")
    @classmethod
    def positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v


class APIConfig(BaseModel):
    """FastAPI server configuration."""

    model_config = ConfigDict(frozen=True)

    host: str = "0.0.0.0"
    port: int = 3001
    api_key: str | None = None


class LoggingConfig(BaseModel):
    """Log level and optional file sink."""

    model_config = ConfigDict(frozen=True)

    level: str = "INFO"
    file: str | None = None

    @field_validator("level")
    @classmethod
    def known_level(cls, v: str) -> str:
        upper = v.upper()
        if upper not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v!r}")
        return upper


class MandiSyncConfig(BaseModel):
    """Root configuration for the entire mandi-sync system."""

    model_config = ConfigDict(frozen=True)

    source: SourceConfig
    sync: SyncConfig = SyncConfig()
    storage: StorageConfig = StorageConfig()
    retention: RetentionConfig = RetentionConfig()
    api: APIConfig = APIConfig()
    logging: LoggingConfig = LoggingConfig()


CONFIG_ENV_VAR = "MANDI_SYNC_CONFIG"
DEFAULT_CONFIG_FILE = "mandi-sync.yml"


def load_config(
    config_path: str | None = None,
    env_prefix: str = "MANDI_SYNC_",
) -> MandiSyncConfig:
    """Build the configuration from defaults, a YAML file and the environment.

    Later layers win: built-in defaults, then the YAML file (explicit
    path, $MANDI_SYNC_CONFIG, or ./mandi-sync.yml), then environment
    variables. Env names map onto nested keys with double underscores,
    e.g. MANDI_SYNC_SOURCE__MAX_RETRIES=5 sets source.max_retries.

    Env values are passed through as strings; pydantic coerces them to
    each field's type, and list fields accept comma-separated values.
    """
    try:
        path = _find_config_file(config_path)
        file_values = _read_yaml(path) if path is not None else {}
        merged = _deep_merge(file_values, env_overrides(env_prefix, os.environ))
        return MandiSyncConfig.model_validate(merged)
    except ConfigError:
        raise
    except Exception as e:
        raise ConfigError(str(e), context={"source": "load_config"}) from e


def env_overrides(prefix: str, environ: Mapping[str, str]) -> dict:
    """Nested dict of raw string values for every `prefix`-ed variable."""
    overrides: dict = {}
    for name, value in environ.items():
        if not name.startswith(prefix):
            continue
        key_path = name[len(prefix) :].lower()
        if key_path == "config":
            continue
        *parents, leaf = key_path.split("__")
        node = overrides
        for key in parents:
            node = node.setdefault(key, {})
        node[leaf] = value
    return overrides


def _deep_merge(base: dict, overrides: dict) -> dict:
    merged = dict(base)
    for key, value in overrides.items():
        current = merged.get(key)
        if isinstance(value, dict) and isinstance(current, dict):
            merged[key] = _deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def _find_config_file(explicit: str | None) -> Path | None:
    candidates = [
        (explicit, "config_path"),
        (os.environ.get(CONFIG_ENV_VAR), CONFIG_ENV_VAR),
    ]
    for value, origin in candidates:
        if not value:
            continue
        path = Path(value)
        if not path.is_file():
            raise ConfigError(
                f"Config file not found: {value}",
                context={"field": origin, "value": value},
            )
        return path

    default = Path(DEFAULT_CONFIG_FILE)
    return default if default.is_file() else None


def _read_yaml(path: Path) -> dict:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError(
            f"Failed to parse YAML config {path}: {e}",
            context={"field": "config_file", "value": str(path)},
        ) from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(
            f"YAML config must be a mapping, got {type(data).__name__}",
            context={"field": "config_file", "value": str(path)},
        )
    return data
