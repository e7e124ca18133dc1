"""
flowfolders Configuration — Load and validate flowfolders.yaml.

Usage:
    from flowfolders.engine.config import load_config, get_config
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator

from flowfolders.engine.errors import ConfigError

CONFIG_FILENAME = "flowfolders.yaml"


# ---------------------------------------------------------------------------
# Pydantic models for flowfolders.yaml
# ---------------------------------------------------------------------------

class DatabaseConfig(BaseModel):
    url: str = "sqlite:///flowfolders.db"
    pool_size: int = 10
    max_overflow: int = 20
    pool_timeout: int = 30
    pool_recycle: int = 1800
    pool_pre_ping: bool = True
    echo: bool = False


class RedisConfig(BaseModel):
    url: str = "redis://localhost:6379/0"
    enabled: bool = False
    db: int = 2
    ttl: int = 300


class TraversalConfig(BaseModel):
    # Ancestor walks deeper than this are treated as store corruption.
    max_depth: int = Field(default=256, ge=1)


class LoggingConfig(BaseModel):
    level: str = "INFO"
    directory: str = ".flowfolders/logs"
    audit: bool = True

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        v = v.upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"logging level must be DEBUG/INFO/WARNING/ERROR/CRITICAL, got '{v}'")
        return v


class EngineConfig(BaseModel):
    """Root model for flowfolders.yaml."""
    name: str = "flowfolders"
    environment: str = "dev"

    database: DatabaseConfig = DatabaseConfig()
    redis: RedisConfig = RedisConfig()
    traversal: TraversalConfig = TraversalConfig()
    logging: LoggingConfig = LoggingConfig()

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        if v not in ("dev", "staging", "prod"):
            raise ValueError(f"environment must be dev/staging/prod, got '{v}'")
        return v


# ---------------------------------------------------------------------------
# Config Loading Functions
# ---------------------------------------------------------------------------

_config: Optional[EngineConfig] = None


def _find_project_root() -> Path:
    """Find the project root by looking for flowfolders.yaml."""
    current = Path.cwd()
    for parent in [current, *current.parents]:
        if (parent / CONFIG_FILENAME).exists():
            return parent
    return current


def load_config(config_path: Optional[str] = None) -> EngineConfig:
    """
    Load and validate flowfolders.yaml.

    Args:
        config_path: Explicit path to the file. If None, auto-discovers
            by walking up from the working directory.

    Returns:
        Validated EngineConfig instance (defaults when no file exists).

    Raises:
        ConfigError: the file exists but is not valid YAML or fails validation.
    """
    global _config

    if config_path is None:
        config_path = str(_find_project_root() / CONFIG_FILENAME)

    path = Path(config_path)
    if not path.exists():
        _config = EngineConfig()
        return _config

    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}", path=str(path)) from e

    if not isinstance(raw, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level", path=str(path))

    try:
        _config = EngineConfig(**raw)
    except PydanticValidationError as e:
        raise ConfigError(f"Invalid configuration in {path}: {e}", path=str(path)) from e
    return _config


def get_config() -> EngineConfig:
    """Get the currently loaded config, loading if necessary."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    """Forget the cached config (tests, reload)."""
    global _config
    _config = None
