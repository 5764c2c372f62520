"""Config file loading and auto-discovery for capacity-collector.

Searches for ``capacity-collector.yaml`` in the current directory and parent
directories, parses it, validates it, and resolves all relative paths against
the config file's location.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from capacity_collector.models import ClusterFilterSpec, CollectionInterval

CONFIG_FILENAME = "capacity-collector.yaml"

_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class ConfigError(Exception):
    """Raised when the config file cannot be read, parsed, or validated."""


class SigV4Settings(BaseModel):
    """AWS request signing for Amazon Managed Service for Prometheus."""

    region: str
    profile: str | None = None
    role_arn: str | None = None
    service: str = "aps"


class PrometheusSettings(BaseModel):
    """Connection settings for the Prometheus-compatible API."""

    url: str = "http://localhost:9090"
    username: str | None = None
    password: str | None = None
    password_file: str | None = None
    bearer_token: str | None = None
    bearer_token_file: str | None = None
    ca_cert: str | None = None
    insecure_skip_verify: bool = False
    sigv4: SigV4Settings | None = None

    data_timeout: float = Field(120.0, gt=0)
    """Hard ceiling in seconds for data queries."""

    metadata_timeout: float = Field(60.0, gt=0)
    """Hard ceiling in seconds for metadata calls (build info)."""

    connectivity_error_level: str = "warning"
    """Log level for connectivity errors after the first (fatal) one."""

    @field_validator("connectivity_error_level")
    @classmethod
    def _known_level(cls, v: str) -> str:
        if v.lower() not in _LOG_LEVELS:
            raise ValueError(f"unknown log level: {v}")
        return v.lower()

    @property
    def host(self) -> str:
        return (urlparse(self.url).hostname or "").lower()

    @property
    def has_password(self) -> bool:
        return bool(self.password or self.password_file)

    @property
    def connectivity_log_level(self) -> int:
        return _LOG_LEVELS[self.connectivity_error_level]


class CollectionSettings(BaseModel):
    """How much history to collect and at which resolution."""

    interval: CollectionInterval = CollectionInterval.DAYS
    interval_size: int = Field(1, ge=1)
    history: int = Field(1, ge=1)
    """Number of historical windows, newest first."""

    sample_rate: int = Field(5, ge=1)
    """Step of ranged queries, in minutes."""

    offset: int = Field(0, ge=0)
    """Number of interval units to shift the collection end back by."""

    include: list[str] = Field(default_factory=list)
    query_per_cluster: bool = True
    scrape_lookback_minutes: int = Field(60, ge=1)
    default_scrape_interval_seconds: int = Field(60, ge=1)

    @property
    def step(self) -> timedelta:
        return timedelta(minutes=self.sample_rate)

    @property
    def unit(self) -> timedelta:
        """Length of one historical window."""
        match self.interval:
            case CollectionInterval.DAYS:
                return timedelta(days=self.interval_size)
            case CollectionInterval.HOURS:
                return timedelta(hours=self.interval_size)
            case _:
                return timedelta(minutes=self.interval_size)

    @property
    def scrape_lookback(self) -> timedelta:
        return timedelta(minutes=self.scrape_lookback_minutes)

    @property
    def default_scrape_interval(self) -> timedelta:
        return timedelta(seconds=self.default_scrape_interval_seconds)

    def current_time(self, now: datetime | None = None) -> datetime:
        """Collection end time: *now* truncated to the interval unit, minus the offset."""
        t = (now or datetime.now(tz=UTC)).astimezone(UTC)
        match self.interval:
            case CollectionInterval.DAYS:
                base = t.replace(hour=0, minute=0, second=0, microsecond=0)
                return base - timedelta(days=self.offset)
            case CollectionInterval.HOURS:
                base = t.replace(minute=0, second=0, microsecond=0)
                return base - timedelta(hours=self.offset)
            case _:
                base = t.replace(second=0, microsecond=0)
                return base - timedelta(minutes=self.offset)

    def includes(self, entity_kind: str) -> bool:
        return not self.include or entity_kind in self.include


class CollectorConfig(BaseModel):
    """Parsed capacity-collector configuration."""

    config_path: Path | None = None
    prometheus: PrometheusSettings = Field(default_factory=PrometheusSettings)
    collection: CollectionSettings = Field(default_factory=CollectionSettings)
    clusters: list[ClusterFilterSpec] = Field(default_factory=list)
    output_dir: str = "./data"
    debug: bool = False


def find_config(start: Path | None = None) -> Path | None:
    """Walk from *start* (default ``cwd()``) up to the filesystem root.

    Returns the first ``capacity-collector.yaml`` found, or ``None``.
    """
    current = (start or Path.cwd()).resolve()
    while True:
        candidate = current / CONFIG_FILENAME
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            return None
        current = parent


def load_config(
    path: str | Path | None = None,
    *,
    auto_discover: bool = True,
) -> CollectorConfig:
    """Load a capacity-collector config file.

    Resolution order:

    1. Explicit *path* (error if it doesn't exist).
    2. Auto-discover by walking parent directories.
    3. Return an empty ``CollectorConfig`` (all defaults).
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path).resolve()
        if not config_path.is_file():
            msg = f"Config file not found: {config_path}"
            raise FileNotFoundError(msg)
    elif auto_discover:
        config_path = find_config()

    if config_path is None:
        return CollectorConfig()

    return _parse_config(config_path)


def _parse_config(config_path: Path) -> CollectorConfig:
    """Read and parse a YAML config file, resolving relative paths."""
    try:
        data = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

    if not isinstance(data, dict):
        msg = f"Expected a YAML mapping in {config_path}, got {type(data).__name__}"
        raise ConfigError(msg)

    base = config_path.parent

    def _resolve(value: Any) -> str | None:
        if value is None:
            return None
        return str((base / value).resolve())

    prom: dict[str, Any] = dict(data.get("prometheus") or {})
    for key in ("password_file", "bearer_token_file", "ca_cert"):
        if key in prom:
            prom[key] = _resolve(prom[key])

    try:
        return CollectorConfig(
            config_path=config_path,
            prometheus=PrometheusSettings(**prom),
            collection=CollectionSettings(**(data.get("collection") or {})),
            clusters=[ClusterFilterSpec(**c) for c in data.get("clusters") or []],
            output_dir=_resolve(data.get("output_dir", "./data")),
            debug=bool(data.get("debug", False)),
        )
    except (ValidationError, TypeError) as e:
        raise ConfigError(f"Invalid config in {config_path}: {e}") from e
