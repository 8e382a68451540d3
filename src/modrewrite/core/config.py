"""Configuration types with environment variable support.

All settings can be configured via environment variables with the MODREWRITE_ prefix.
Example: MODREWRITE_UPSTREAM=http://localhost:3000 sets the pass-through origin.

Rules are usually supplied from a YAML or TOML file:

    bind: 0.0.0.0:8080
    upstream: http://localhost:3000
    rules:
      - ^/old$ /new [R=302]
      - ^/api/(.*)$ http://api.internal/$1 [P]
"""

from __future__ import annotations

import socket
import tomllib
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def load_config_from_file(path: str | Path) -> dict[str, Any]:
    """Load configuration from a YAML or TOML file.

    Args:
        path: Path to the configuration file (.yaml, .yml, or .toml)

    Returns:
        Configuration dictionary

    Raises:
        FileNotFoundError: If the config file doesn't exist
        ValueError: If the config file has encoding errors, invalid syntax, or unsupported format
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise ValueError(f"Config file encoding error in {path}: {e}") from e

    try:
        if path.suffix in (".yaml", ".yml"):
            data = yaml.safe_load(content) or {}
        elif path.suffix == ".toml":
            data = tomllib.loads(content)
        else:
            raise ValueError(f"Unsupported config format: {path.suffix}")
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"Invalid TOML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping")
    # Allow the settings to live under a `modrewrite` section
    section = data.get("modrewrite")
    return section if isinstance(section, dict) else data


def default_via() -> str:
    return f"1.1 {socket.gethostname()}"


class RewriteConfig(BaseSettings):
    """Rewrite server configuration."""

    model_config = SettingsConfigDict(
        env_prefix="MODREWRITE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    bind: str = Field(
        default="0.0.0.0:8080",
        description="Address the rewrite server listens on (host:port).",
    )
    rules: list[str] = Field(
        default_factory=list,
        description="Rewrite rule lines, evaluated in order.",
    )
    via: str = Field(
        default_factory=default_via,
        description="This proxy's identity in the Via header chain.",
    )
    upstream: str | None = Field(
        default=None,
        description="Origin that receives requests no rule answered or proxied.",
    )
    static_root: str | None = Field(
        default=None,
        description="Directory served to requests no rule answered (if no upstream).",
    )
    connect_timeout: float | None = Field(
        default=30.0,
        description="Upstream connect timeout (seconds). None for indefinite.",
    )
    read_timeout: float | None = Field(
        default=None,
        description="Upstream read timeout (seconds). None for indefinite.",
    )
    chunk_size: int = Field(
        default=65536,
        gt=0,
        description="Chunk size for streaming proxied bodies (bytes). Default 64KB.",
    )
    metrics_path: str | None = Field(
        default=None,
        description="Path serving Prometheus metrics, e.g. /_modrewrite/metrics. Disabled if unset.",
    )
    log_level: str = Field(
        default="info",
        description="Log level: debug, info, warning or error.",
    )

    @field_validator("bind")
    @classmethod
    def _check_bind(cls, value: str) -> str:
        _, sep, port = value.rpartition(":")
        if not sep or not port.isdigit():
            raise ValueError(f"bind must be host:port, got {value!r}")
        return value

    @field_validator("upstream")
    @classmethod
    def _check_upstream(cls, value: str | None) -> str | None:
        if value and not value.startswith(("http://", "https://")):
            raise ValueError("upstream must be an absolute http(s) URL")
        return value

    @field_validator("metrics_path")
    @classmethod
    def _check_metrics_path(cls, value: str | None) -> str | None:
        if value and not value.startswith("/"):
            raise ValueError("metrics_path must start with '/'")
        return value

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        level = value.lower()
        if level not in ("debug", "info", "warning", "error"):
            raise ValueError(f"Unknown log level: {value}")
        return level

    @property
    def host(self) -> str:
        host, _, _ = self.bind.rpartition(":")
        return host or "0.0.0.0"

    @property
    def port(self) -> int:
        _, _, port = self.bind.rpartition(":")
        return int(port)

    @classmethod
    def from_file(cls, path: str | Path, **overrides: Any) -> RewriteConfig:
        """Load settings from a file; non-None ``overrides`` win over file values."""
        data = load_config_from_file(path)
        data.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**data)

    def to_display_dict(self) -> dict[str, Any]:
        """Export current configuration as a dictionary for display."""
        return {
            "bind": self.bind,
            "rules": len(self.rules),
            "via": self.via,
            "upstream": self.upstream,
            "static_root": self.static_root,
            "connect_timeout": self.connect_timeout,
            "read_timeout": self.read_timeout,
            "chunk_size": self.chunk_size,
            "metrics_path": self.metrics_path,
            "log_level": self.log_level,
        }

