"""
Configuration management for the campfire service.

Loads configuration from YAML with ZERO defaults.
Every value must be explicitly specified or startup fails.
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict


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
    """Identity service connection configuration."""

    model_config = ConfigDict(extra="forbid")
    base_url: str
    resolve_token_path: str
    get_user_path: str
    timeout_seconds: int


class NotificationsConfig(BaseModel):
    """Notification sink connection configuration."""

    model_config = ConfigDict(extra="forbid")
    base_url: str
    notify_path: str
    timeout_seconds: float


class CreditPackConfig(BaseModel):
    """A purchasable credit pack."""

    model_config = ConfigDict(extra="forbid")
    pack_id: str
    name: str
    credits: float


class CreditsConfig(BaseModel):
    """Credit ledger policy configuration."""

    model_config = ConfigDict(extra="forbid")
    hold_expiry_seconds: int | None
    packs: list[CreditPackConfig]


class PricingConfig(BaseModel):
    """Task cost derivation."""

    model_config = ConfigDict(extra="forbid")
    default_cost: float
    cost_per_complexity_level: float
    category_costs: dict[str, float]


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
    notifications: NotificationsConfig
    credits: CreditsConfig
    pricing: PricingConfig
    request: RequestConfig


def get_config_path() -> Path:
    """
    Determine configuration file path.

    Uses CONFIG_PATH when set, otherwise config.yaml in the working directory.
    """
    env_path = os.environ.get("CONFIG_PATH")
    if env_path:
        return Path(env_path)
    return Path.cwd() / "config.yaml"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load and cache settings from the YAML config file."""
    config_path = get_config_path()
    raw = yaml.safe_load(config_path.read_text())
    if not isinstance(raw, dict):
        msg = f"Invalid config file: {config_path}"
        raise ValueError(msg)
    return Settings(**raw)


def clear_settings_cache() -> None:
    """Drop cached settings. Used in testing."""
    get_settings.cache_clear()
