"""Unified configuration loaded from .devsuite.toml, env vars, and CLI flags.

Loading order: defaults → TOML file → env vars → CLI flags.
"""

from __future__ import annotations

import getpass
import logging
import os
import tomllib
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

CONFIG_FILENAME = ".devsuite.toml"
CONFIG_SEARCH_PATHS = [
    Path("."),
]
GLOBAL_CONFIG_PATH = Path.home() / ".config" / "devsuite" / "config.toml"

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class StorageConfig(BaseModel):
    """[storage] section."""

    directory: str = "./.devsuite"

    @property
    def path(self) -> Path:
        return Path(self.directory).expanduser()


class IdentityConfig(BaseModel):
    """[identity] section — who is acting, and for which tenant."""

    tenant: str = "default"
    actor: str = ""

    def resolve_actor(self) -> str:
        """Configured actor, falling back to the login name."""
        if self.actor:
            return self.actor
        try:
            return getpass.getuser()
        except (KeyError, OSError):
            return "local"


class LoggingConfig(BaseModel):
    """[logging] section."""

    level: str = "WARNING"

    @field_validator("level")
    @classmethod
    def _normalize_level(cls, value: str) -> str:
        level = value.strip().upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"Unknown log level {value!r}")
        return level


class DevsuiteConfig(BaseModel):
    """Top-level configuration model."""

    storage: StorageConfig = Field(default_factory=StorageConfig)
    identity: IdentityConfig = Field(default_factory=IdentityConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_config(path: str | Path | None = None) -> DevsuiteConfig:
    """Load configuration from a TOML file.

    Search order:
    1. Explicit path (if provided)
    2. .devsuite.toml in CWD
    3. ~/.config/devsuite/config.toml

    Then overlay environment variables.

    Args:
        path: Explicit path to a TOML file.

    Returns:
        Merged DevsuiteConfig.
    """
    data: dict[str, object] = {}

    if path is not None:
        toml_path = Path(path)
        if toml_path.exists():
            data = _load_toml(toml_path)
        else:
            logger.warning("Config file not found: %s", toml_path)
    else:
        for search_dir in CONFIG_SEARCH_PATHS:
            candidate = search_dir / CONFIG_FILENAME
            if candidate.exists():
                data = _load_toml(candidate)
                logger.info("Loaded config from %s", candidate)
                break
        if not data and GLOBAL_CONFIG_PATH.exists():
            data = _load_toml(GLOBAL_CONFIG_PATH)
            logger.info("Loaded config from %s", GLOBAL_CONFIG_PATH)

    try:
        config = DevsuiteConfig.model_validate(data) if data else DevsuiteConfig()
    except ValueError as exc:
        logger.warning("Invalid config, using defaults: %s", exc)
        config = DevsuiteConfig()

    return _apply_env_vars(config)


def merge_cli_overrides(config: DevsuiteConfig, **cli_kwargs: object) -> DevsuiteConfig:
    """Overlay explicitly-set CLI flags onto the config.

    Only overrides values where the CLI flag was explicitly provided
    (i.e., not None).

    Args:
        config: Base config.
        **cli_kwargs: CLI flag values (``data_dir``, ``tenant``, ``actor``,
            ``log_level``).

    Returns:
        Updated config with CLI overrides applied.
    """
    data = config.model_dump()

    mapping: dict[str, tuple[str, str]] = {
        "data_dir": ("storage", "directory"),
        "tenant": ("identity", "tenant"),
        "actor": ("identity", "actor"),
        "log_level": ("logging", "level"),
    }

    for key, value in cli_kwargs.items():
        if value is None:
            continue
        if key in mapping:
            section, field = mapping[key]
            data[section][field] = str(value)

    return DevsuiteConfig.model_validate(data)


def _load_toml(path: Path) -> dict[str, object]:
    """Load a TOML file and return the data dict."""
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except (tomllib.TOMLDecodeError, OSError) as exc:
        logger.warning("Failed to parse %s: %s", path, exc)
        return {}


def _apply_env_vars(config: DevsuiteConfig) -> DevsuiteConfig:
    """Apply environment variable overrides to config."""
    data = config.model_dump()

    env_mapping: dict[str, tuple[str, str]] = {
        "DEVSUITE_DATA_DIR": ("storage", "directory"),
        "DEVSUITE_TENANT": ("identity", "tenant"),
        "DEVSUITE_ACTOR": ("identity", "actor"),
        "DEVSUITE_LOG_LEVEL": ("logging", "level"),
    }

    for env_var, (section, field) in env_mapping.items():
        value = os.environ.get(env_var)
        if value is not None:
            data[section][field] = value

    try:
        return DevsuiteConfig.model_validate(data)
    except ValueError as exc:
        logger.warning("Ignoring invalid environment overrides: %s", exc)
        return config
