"""Client configuration: explicit fields, environment and YAML file loading."""

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import httpx
import yaml

from core.errors import ConfigurationError

DEFAULT_PROJECT_NAME = "Default Project"
DEFAULT_BASE_URL = "https://www.comet.com/opik/api"

# field name -> environment variable
ENV_VARS = {
    "api_key": "OPIK_API_KEY",
    "workspace": "OPIK_WORKSPACE",
    "project_name": "OPIK_PROJECT_NAME",
    "base_url": "OPIK_URL_OVERRIDE",
    "timeout": "OPIK_TIMEOUT",
    "flush_interval": "OPIK_FLUSH_INTERVAL",
}


@dataclass
class ClientConfig:
    """
    Everything the client needs to reach the remote tracing API.

    api_key and workspace are required; validate() raises ConfigurationError
    when either is missing. transport replaces the network layer of the
    underlying httpx.Client (e.g. httpx.MockTransport in tests).
    """
    api_key: str | None = None
    workspace: str | None = None
    project_name: str = DEFAULT_PROJECT_NAME
    base_url: str = DEFAULT_BASE_URL
    timeout: float = 30.0
    flush_interval: float | None = None   # seconds; None = no background flusher
    flush_batch_size: int = 100           # pending ops that wake the background flusher
    max_batch_size: int = 1000            # records per bulk-create request
    transport: httpx.BaseTransport | None = None

    def validate(self) -> "ClientConfig":
        """Check required fields. Returns self so calls can be chained."""
        if not self.api_key:
            raise ConfigurationError(f"API key is not configured (set {ENV_VARS['api_key']})")
        if not self.workspace:
            raise ConfigurationError(f"workspace is not configured (set {ENV_VARS['workspace']})")
        if not self.project_name:
            self.project_name = DEFAULT_PROJECT_NAME
        if self.timeout <= 0:
            raise ConfigurationError(f"timeout must be positive, got {self.timeout}")
        if self.flush_interval is not None and self.flush_interval <= 0:
            raise ConfigurationError(f"flush_interval must be positive, got {self.flush_interval}")
        if self.flush_batch_size < 1 or self.max_batch_size < 1:
            raise ConfigurationError("batch sizes must be at least 1")
        return self

    @classmethod
    def from_env(cls, **overrides: Any) -> "ClientConfig":
        """Build a config from OPIK_* environment variables. Keyword overrides win."""
        values = _read_env()
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    @classmethod
    def from_file(cls, path: str | Path, **overrides: Any) -> "ClientConfig":
        """
        Load a YAML mapping of config fields. Environment variables override
        file values, keyword overrides win over both.
        """
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"config file {path} must contain a mapping")

        known = {f.name for f in fields(cls)} - {"transport"}
        unknown = set(data) - known
        if unknown:
            raise ConfigurationError(f"unknown config keys in {path}: {', '.join(sorted(unknown))}")

        values = {k: _coerce(k, v) for k, v in data.items()}
        values.update(_read_env())
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


def _read_env() -> dict[str, Any]:
    values = {}
    for name, var in ENV_VARS.items():
        raw = os.getenv(var, "").strip()
        if raw:
            values[name] = _coerce(name, raw)
    return values


def _coerce(name: str, value: Any) -> Any:
    if value is None:
        return None
    try:
        if name in ("timeout", "flush_interval"):
            return float(value)
        if name in ("flush_batch_size", "max_batch_size"):
            return int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"invalid value for {name}: {value!r}") from None
    return str(value)
