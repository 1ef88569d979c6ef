"""Configuration models and loaders for completionbridge.

This module defines the runtime configuration schema and how values are loaded
from YAML plus environment variable overrides.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_CONFIG_PATH = "completionbridge/config.yaml"
DEFAULT_UPSTREAM_URL = "https://api.anthropic.com/v1/messages"
DEFAULT_UPSTREAM_MODEL = "claude-sonnet-4-5"
DEFAULT_UPSTREAM_API_VERSION = "2023-06-01"


class LoggingConfig(BaseModel):
    """Logging-related configuration."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    level: str = "INFO"
    json_logs: bool = Field(default=False, alias="json")


class BridgeConfig(BaseModel):
    """Top-level bridge configuration."""

    model_config = ConfigDict(extra="forbid")

    service_base_url: str = "http://127.0.0.1:8080"
    service_api_key: str | None = None

    upstream_url: str | None = None
    upstream_api_key: str | None = None
    upstream_model: str | None = None
    upstream_max_tokens: int | None = None
    upstream_api_version: str | None = None
    upstream_timeout_seconds: float | None = None

    logging: LoggingConfig | None = None

    @model_validator(mode="after")
    def _validate_service_base_url(self) -> "BridgeConfig":
        """Validate that service_base_url includes host and port and fill defaults."""
        parsed = urlparse(self.service_base_url)
        if not parsed.hostname or parsed.port is None:
            raise ValueError("service_base_url must include host and port, e.g. http://127.0.0.1:8080")
        if self.upstream_url is None:
            self.upstream_url = DEFAULT_UPSTREAM_URL
        if self.upstream_model is None:
            self.upstream_model = DEFAULT_UPSTREAM_MODEL
        if self.upstream_max_tokens is None:
            self.upstream_max_tokens = 64000
        if self.upstream_api_version is None:
            self.upstream_api_version = DEFAULT_UPSTREAM_API_VERSION
        if self.upstream_timeout_seconds is None:
            self.upstream_timeout_seconds = 300.0
        if self.logging is None:
            self.logging = LoggingConfig()
        return self

    @field_validator("upstream_max_tokens", "upstream_timeout_seconds")
    @classmethod
    def _validate_positive(cls, value: float | None) -> float | None:
        """Reject zero or negative token limits and timeouts."""
        if value is None:
            return None
        if value <= 0:
            raise ValueError("must be > 0")
        return value

    @field_validator("upstream_url")
    @classmethod
    def _validate_upstream_url(cls, value: str | None) -> str | None:
        """Require an absolute http(s) upstream URL."""
        if value is None:
            return None
        parsed = urlparse(value)
        if parsed.scheme not in {"http", "https"} or not parsed.hostname:
            raise ValueError("upstream_url must be an absolute http(s) URL")
        return value


def _load_yaml(path: str | None) -> dict[str, Any]:
    """Read the YAML config file; an absent file contributes nothing."""
    if not path or not Path(path).is_file():
        return {}
    data = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"config root must be a mapping: {path}")
    return data


ENV_PREFIX = "COMPLETIONBRIDGE_"

# Nested logging keys use shorter names than the field paths.
_LOGGING_ENV_NAMES = {"level": f"{ENV_PREFIX}LOG_LEVEL", "json": f"{ENV_PREFIX}LOG_JSON"}


def _override_from_env(data: dict[str, Any]) -> dict[str, Any]:
    """Layer `COMPLETIONBRIDGE_*` variables over file values.

    Values stay strings here; model validation coerces and checks them, so a
    bad number in the environment is reported like a bad number in the file.
    """
    out = dict(data)
    for name in BridgeConfig.model_fields:
        if name == "logging":
            continue
        value = os.getenv(f"{ENV_PREFIX}{name.upper()}")
        if value is not None:
            out[name] = value

    logging_section = out.get("logging")
    logging_out = dict(logging_section) if isinstance(logging_section, dict) else {}
    for key, env_name in _LOGGING_ENV_NAMES.items():
        value = os.getenv(env_name)
        if value is not None:
            logging_out[key] = value
    if logging_out or logging_section is not None:
        out["logging"] = logging_out
    return out


def load_config(path: str | None = None) -> BridgeConfig:
    """Load, merge, and validate bridge configuration."""
    final_path = path or os.getenv(f"{ENV_PREFIX}CONFIG") or DEFAULT_CONFIG_PATH
    return BridgeConfig.model_validate(_override_from_env(_load_yaml(final_path)))

