"""
Engine settings

Settings are an immutable pydantic value built once (from the environment,
optionally seeded from a .env file) and handed to the components that need
them. Nothing reads the environment after `load_settings()` returns.

Environment variables (all optional):
    IMPORT_PIPELINES_QUEUE / _HIGH_PRIORITY_QUEUE / _LOW_PRIORITY_QUEUE
    IMPORT_PIPELINES_TIMEOUT / _LARGE_FILE_TIMEOUT / _SMALL_FILE_TIMEOUT
    IMPORT_PIPELINES_RETRY_ATTEMPTS / _BACKOFF / _MAX_EXCEPTIONS
    IMPORT_PIPELINES_MEMORY / _LARGE_FILE_MEMORY
    IMPORT_PIPELINES_TOLERANCE_MINUTES / _CUSTOM_INTERVAL_HOURS
    IMPORT_PIPELINES_LOG_LEVEL / _LOG_FORMAT
    IMPORT_PIPELINES_EXECUTION_LOG_LEVEL / _SCHEDULING_LOG_LEVEL
    IMPORT_PIPELINES_LOG_CHANNELS  (category=level pairs, e.g. "download=debug,save=dev")
    IMPORT_PIPELINES_CACHE_PREFIX / _CACHE_TTL / _CACHE_URL
    IMPORT_PIPELINES_PREPARE_RESOLVER / _PRICE_TYPES
    IMPORT_PIPELINES_IMAGE_WORKERS
    IMPORT_PIPELINES_DB_PATH
    CELERY_BROKER_URL / CELERY_RESULT_BACKEND
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from importer.common.exceptions import ConfigurationError
from importer.common.logger import Category, LogLevel

_FROZEN = ConfigDict(frozen=True)


class QueueSettings(BaseModel):
    model_config = _FROZEN
    default: str = Field(default="import-pipelines")
    high_priority: str = Field(default="import-pipelines-high")
    low_priority: str = Field(default="import-pipelines-low")


class TimeoutSettings(BaseModel):
    """Whole-run time limits in seconds, per payload size class"""
    model_config = _FROZEN
    default: int = Field(default=5600, gt=0)
    large_files: int = Field(default=7200, gt=0)
    small_files: int = Field(default=1800, gt=0)


class RetrySettings(BaseModel):
    model_config = _FROZEN
    max_attempts: int = Field(default=1, ge=1)
    backoff: int = Field(default=60, ge=0, description="Fixed delay between attempts (s)")
    max_exceptions: int = Field(default=3, ge=1)


class MemorySettings(BaseModel):
    """Memory ceilings in megabytes"""
    model_config = _FROZEN
    default: int = Field(default=512, gt=0)
    large_files: int = Field(default=1024, gt=0)


class SchedulingSettings(BaseModel):
    model_config = _FROZEN
    tolerance_minutes: int = Field(default=5, ge=0)
    custom_interval_hours: int = Field(default=24, gt=0)


class LoggingSettings(BaseModel):
    model_config = _FROZEN
    level: str = Field(default="info")
    format: str = Field(default="text")
    channels: Dict[str, str] = Field(default_factory=dict, description="Verbosity per log category")

    @field_validator("channels")
    @classmethod
    def known_channels(cls, v: Dict[str, str]) -> Dict[str, str]:
        known = {c.value for c in Category}
        unknown = sorted(set(v) - known)
        if unknown:
            raise ValueError(f"unknown log channels: {', '.join(unknown)}")
        return {name: LogLevel.parse(level).value for name, level in v.items()}


class CacheSettings(BaseModel):
    model_config = _FROZEN
    prefix: str = Field(default="import_")
    ttl: int = Field(default=3600, ge=0)
    url: Optional[str] = Field(default=None, description="redis:// URL; in-process cache when unset")


class PrepareSettings(BaseModel):
    model_config = _FROZEN
    using: Optional[str] = Field(default=None, description="Deployment-wide resolver name")
    price_types: List[str] = Field(default_factory=lambda: ["msrp", "retail", "sale"],
                                   description="Price codes offered as `<code>_price` target fields")

    @field_validator("price_types", mode="before")
    @classmethod
    def split_codes(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [code.strip() for code in v.split(",") if code.strip()]
        return v


class ImageSettings(BaseModel):
    model_config = _FROZEN
    max_workers: int = Field(default=4, ge=1)
    request_timeout: int = Field(default=10, gt=0)


class DatabaseSettings(BaseModel):
    model_config = _FROZEN
    driver: str = Field(default="duckdb")
    path: str = Field(default=":memory:")


class BrokerSettings(BaseModel):
    model_config = _FROZEN
    broker_url: str = Field(default="redis://localhost:6379/0")
    result_backend: str = Field(default="redis://localhost:6379/1")


class ImportSettings(BaseModel):
    """Complete engine settings"""
    model_config = _FROZEN

    queues: QueueSettings = Field(default_factory=QueueSettings)
    timeouts: TimeoutSettings = Field(default_factory=TimeoutSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    memory: MemorySettings = Field(default_factory=MemorySettings)
    scheduling: SchedulingSettings = Field(default_factory=SchedulingSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    prepare: PrepareSettings = Field(default_factory=PrepareSettings)
    images: ImageSettings = Field(default_factory=ImageSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    broker: BrokerSettings = Field(default_factory=BrokerSettings)


# env var -> (section, key)
ENV_MAP: Dict[str, tuple[str, str]] = {
    "IMPORT_PIPELINES_QUEUE": ("queues", "default"),
    "IMPORT_PIPELINES_HIGH_PRIORITY_QUEUE": ("queues", "high_priority"),
    "IMPORT_PIPELINES_LOW_PRIORITY_QUEUE": ("queues", "low_priority"),
    "IMPORT_PIPELINES_TIMEOUT": ("timeouts", "default"),
    "IMPORT_PIPELINES_LARGE_FILE_TIMEOUT": ("timeouts", "large_files"),
    "IMPORT_PIPELINES_SMALL_FILE_TIMEOUT": ("timeouts", "small_files"),
    "IMPORT_PIPELINES_RETRY_ATTEMPTS": ("retry", "max_attempts"),
    "IMPORT_PIPELINES_BACKOFF": ("retry", "backoff"),
    "IMPORT_PIPELINES_MAX_EXCEPTIONS": ("retry", "max_exceptions"),
    "IMPORT_PIPELINES_MEMORY": ("memory", "default"),
    "IMPORT_PIPELINES_LARGE_FILE_MEMORY": ("memory", "large_files"),
    "IMPORT_PIPELINES_TOLERANCE_MINUTES": ("scheduling", "tolerance_minutes"),
    "IMPORT_PIPELINES_CUSTOM_INTERVAL_HOURS": ("scheduling", "custom_interval_hours"),
    "IMPORT_PIPELINES_LOG_LEVEL": ("logging", "level"),
    "IMPORT_PIPELINES_LOG_FORMAT": ("logging", "format"),
    "IMPORT_PIPELINES_CACHE_PREFIX": ("cache", "prefix"),
    "IMPORT_PIPELINES_CACHE_TTL": ("cache", "ttl"),
    "IMPORT_PIPELINES_CACHE_URL": ("cache", "url"),
    "IMPORT_PIPELINES_PREPARE_RESOLVER": ("prepare", "using"),
    "IMPORT_PIPELINES_PRICE_TYPES": ("prepare", "price_types"),
    "IMPORT_PIPELINES_IMAGE_WORKERS": ("images", "max_workers"),
    "IMPORT_PIPELINES_DB_PATH": ("database", "path"),
    "CELERY_BROKER_URL": ("broker", "broker_url"),
    "CELERY_RESULT_BACKEND": ("broker", "result_backend"),
}

CHANNEL_ENV = {
    "IMPORT_PIPELINES_EXECUTION_LOG_LEVEL": "execution",
    "IMPORT_PIPELINES_SCHEDULING_LOG_LEVEL": "scheduling",
}


def _parse_channels(raw: str) -> Dict[str, str]:
    pairs = (item.split("=", 1) for item in raw.split(",") if "=" in item)
    return {name.strip(): level.strip() for name, level in pairs}


def load_settings(env: Optional[Mapping[str, str]] = None, dotenv_path: Optional[Path] = None) -> ImportSettings:
    """
    Build settings from environment variables.

    Args:
        env: Explicit variable mapping (defaults to os.environ)
        dotenv_path: Optional .env file; its values fill gaps, the environment wins

    Raises:
        ConfigurationError: If a value fails validation
    """
    values: Dict[str, Any] = {}
    if dotenv_path is not None:
        values.update({k: v for k, v in dotenv_values(dotenv_path).items() if v is not None})
    values.update(os.environ if env is None else env)

    sections: Dict[str, Dict[str, Any]] = {}
    for var, (section, key) in ENV_MAP.items():
        raw = values.get(var)
        if raw is None or raw == "":
            continue
        sections.setdefault(section, {})[key] = raw

    channels = _parse_channels(values.get("IMPORT_PIPELINES_LOG_CHANNELS") or "")
    channels.update({name: values[var] for var, name in CHANNEL_ENV.items() if values.get(var)})
    if channels:
        sections.setdefault("logging", {})["channels"] = channels

    try:
        return ImportSettings(**sections)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid engine settings: {e}") from e
