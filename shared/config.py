"""
Shared configuration management for the metrics relay.
"""

import os
from typing import Any, Dict, List, Optional, Tuple

import yaml
from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from shared.errors import ConfigError
from shared.logging import get_logger

logger = get_logger("relay.config")

DEFAULT_MAX_BODY_SIZE = 1024 * 1024 * 5


class MetricsPushSettings(BaseModel):
    """Where and how often the relay pushes its own metrics."""

    # seconds between pushes
    push_interval_secs: float = Field(default=60.0, gt=0)
    push_url: str
    labels: Optional[Dict[str, str]] = None
    bearer_token: str = Field(default_factory=lambda: os.getenv("RELAY_PUSH_BEARER_TOKEN", ""))

    @property
    def push_interval(self) -> float:
        return self.push_interval_secs


class RelaySettings(BaseSettings):
    """Relay configuration. YAML values override RELAY_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="RELAY_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    env: str = "local"
    log_level: str = "info"

    # Upstream
    pool_max_idle_per_host: int = Field(default=8, ge=0)
    upstream_url: str = "http://localhost:9000/api/v1/metrics/write"
    upstream_timeout_seconds: float = Field(default=30.0, gt=0)

    # Listeners
    listen_address: str = "0.0.0.0:8000"
    metrics_address: str = "0.0.0.0:9185"

    # Request pipeline
    max_body_size: int = Field(default=DEFAULT_MAX_BODY_SIZE, gt=0)
    request_timeout_seconds: float = Field(default=20.0, gt=0)

    # Observability
    enable_tracing: bool = False
    otel_exporter: Optional[str] = None
    enable_console_tracing: bool = False

    metrics_push: Optional[MetricsPushSettings] = None


class BearerTokenItem(BaseModel):
    """One accepted caller."""

    bearer_token: str
    name: str


class BearerTokenConfig(BaseModel):
    items: List[BearerTokenItem]


def _normalize_keys(value: Any) -> Any:
    """Turn kebab-case mapping keys into snake_case, recursively. Labels are left alone."""
    if isinstance(value, dict):
        normalized = {}
        for key, item in value.items():
            new_key = key.replace("-", "_") if isinstance(key, str) else key
            normalized[new_key] = item if new_key == "labels" else _normalize_keys(item)
        return normalized
    if isinstance(value, list):
        return [_normalize_keys(item) for item in value]
    return value


def load_yaml(path: str) -> Dict[str, Any]:
    """Read a YAML mapping from disk, raising ConfigError on any failure."""
    logger.debug("Reading config", path=path)
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except OSError as e:
        raise ConfigError(f"cannot open {path}: {e.strerror or e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"cannot parse {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level")
    return _normalize_keys(data)


def load_settings(path: Optional[str] = None) -> RelaySettings:
    """Load relay settings from an optional YAML file layered over the environment."""
    data = load_yaml(path) if path else {}
    try:
        return RelaySettings(**data)
    except ValidationError as e:
        raise ConfigError(f"invalid settings in {path or 'environment'}: {e}") from e


def load_bearer_tokens(path: str) -> BearerTokenConfig:
    """Load the accepted bearer token list."""
    data = load_yaml(path)
    if not data:
        raise ConfigError(f"bearer token file {path} is empty")
    try:
        return BearerTokenConfig(**data)
    except ValidationError as e:
        raise ConfigError(f"invalid bearer token file {path}: {e}") from e


def parse_address(address: str) -> Tuple[str, int]:
    """Split ``host:port`` into its parts. IPv6 hosts may be bracketed."""
    host, sep, port = address.rpartition(":")
    if not sep or not host:
        raise ConfigError(f"invalid address {address!r}, expected host:port")
    try:
        port_number = int(port)
    except ValueError:
        raise ConfigError(f"invalid port in address {address!r}")
    if not 0 <= port_number <= 65535:
        raise ConfigError(f"port out of range in address {address!r}")
    return host.strip("[]"), port_number
