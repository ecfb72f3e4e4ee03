"""
Configuration management for the milestone escrow service.

Loads configuration from YAML with ZERO defaults.
Every value must be explicitly specified or startup fails.
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, field_validator

REDACTION_MARKER = "***REDACTED***"

_SENSITIVE_KEY_FRAGMENTS: tuple[str, ...] = ("private_key", "secret", "password", "token")


class ServiceConfig(BaseModel):
    """Service identity configuration."""

    model_config = ConfigDict(extra="forbid")
    name: str
    version: str


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    model_config = ConfigDict(extra="forbid")
    host: str
    port: int
    log_level: str


class LoggingConfig(BaseModel):
    """Logging configuration."""

    model_config = ConfigDict(extra="forbid")
    level: str
    directory: str


class DatabaseConfig(BaseModel):
    """Database configuration."""

    model_config = ConfigDict(extra="forbid")
    path: str


class IdentityConfig(BaseModel):
    """Identity provider connection configuration."""

    model_config = ConfigDict(extra="forbid")
    base_url: str
    users_path: str
    timeout_seconds: int


class LedgerConfig(BaseModel):
    """Settlement ledger connection configuration."""

    model_config = ConfigDict(extra="forbid")
    base_url: str
    submit_work_path: str
    assign_reviewers_path: str
    cast_vote_path: str
    release_funds_path: str
    timeout_seconds: int
    release_timeout_seconds: float

    @field_validator("release_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            msg = "release_timeout_seconds must be positive"
            raise ValueError(msg)
        return value


class NotifierConfig(BaseModel):
    """Notification delivery service configuration."""

    model_config = ConfigDict(extra="forbid")
    base_url: str
    notifications_path: str
    timeout_seconds: int


class PlatformConfig(BaseModel):
    """Platform agent configuration for signing ledger operations."""

    model_config = ConfigDict(extra="forbid")
    agent_id: str
    private_key_path: str | None = None


class WorkflowConfig(BaseModel):
    """Workflow policy configuration."""

    model_config = ConfigDict(extra="forbid")
    max_conflict_retries: int
    reviewer_reward_amount: int

    @field_validator("max_conflict_retries")
    @classmethod
    def _non_negative_retries(cls, value: int) -> int:
        if value < 0:
            msg = "max_conflict_retries must be >= 0"
            raise ValueError(msg)
        return value


class RequestConfig(BaseModel):
    """Request handling configuration."""

    model_config = ConfigDict(extra="forbid")
    max_body_size: int


class Settings(BaseModel):
    """
    Root configuration container.

    All fields are REQUIRED. No defaults exist.
    Missing fields cause immediate startup failure.
    """

    model_config = ConfigDict(extra="forbid")
    service: ServiceConfig
    server: ServerConfig
    logging: LoggingConfig
    database: DatabaseConfig
    identity: IdentityConfig
    ledger: LedgerConfig
    notifier: NotifierConfig
    platform: PlatformConfig
    workflow: WorkflowConfig
    request: RequestConfig


def get_config_path() -> Path:
    """Determine configuration file path from CONFIG_PATH or the working directory."""
    configured = os.environ.get("CONFIG_PATH")
    if configured:
        return Path(configured)
    return Path.cwd() / "config.yaml"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Load and validate settings from the YAML config file.

    Raises:
        FileNotFoundError: If the config file does not exist
        pydantic.ValidationError: If the config is incomplete or has unknown keys
    """
    config_path = get_config_path()
    if not config_path.exists():
        msg = f"Configuration file not found: {config_path}"
        raise FileNotFoundError(msg)

    with config_path.open(encoding="utf-8") as config_file:
        raw: Any = yaml.safe_load(config_file)

    if not isinstance(raw, dict):
        msg = f"Configuration file must contain a mapping: {config_path}"
        raise ValueError(msg)

    return Settings.model_validate(raw)


def clear_settings_cache() -> None:
    """Clear the cached settings. Used in testing."""
    get_settings.cache_clear()


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        redacted: dict[str, Any] = {}
        for key, item in value.items():
            if item is not None and any(part in key for part in _SENSITIVE_KEY_FRAGMENTS):
                redacted[key] = REDACTION_MARKER
            else:
                redacted[key] = _redact(item)
        return redacted
    if isinstance(value, list):
        return [_redact(item) for item in value]
    return value


def get_safe_config() -> dict[str, Any]:
    """Get configuration with sensitive values redacted."""
    redacted: dict[str, Any] = _redact(get_settings().model_dump())
    return redacted
