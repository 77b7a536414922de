"""svdrelay Configuration System.

Layered YAML configuration with Pydantic validation.

Config Layer Priority (highest to lowest):
1. Runtime overrides (CLI flags, in-memory)
2. Config file (YAML, passed with --config)
3. Environment variables (SVDRELAY_ prefix, __ for nesting)
4. Defaults (defined in Pydantic models)

Usage:
    from svdrelay.core.config import create_settings

    settings = create_settings(config_path=Path("relay.yaml"))
    print(settings.backend.port)  # 2001 (default)
"""

from __future__ import annotations

import socket
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import yaml
from pydantic import (
    BaseModel,
    Field,
    PositiveFloat,
    PositiveInt,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

from svdrelay.core.exceptions import ConfigurationError


# =============================================================================
# Sub-configuration Models (nested sections)
# =============================================================================


class BackendConfig(BaseModel):
    """Backend (SVDRP server) connection configuration."""

    host: str = "localhost"
    port: PositiveInt = 2001
    connect_timeout: PositiveFloat = 5.0  # seconds
    encoding: str = "utf-8"


class ListenConfig(BaseModel):
    """Client-facing listener configuration."""

    host: str = "127.0.0.1"
    port: int = Field(default=6419, ge=0, le=65535)
    max_clients: PositiveInt = 100
    max_output_buffer: PositiveInt = 1024 * 1024  # bytes pending per client


class RelayConfig(BaseModel):
    """Relay engine configuration."""

    service_name: str = "SVDRP-Relay"
    hostname: str = ""  # empty: use the machine hostname
    ordering: Literal["lifo", "fifo"] = "lifo"
    trace: bool = False
    eager_connect: bool = False
    max_replays: int = Field(default=3, ge=0)
    loop_timeout: PositiveFloat = 300.0  # seconds
    shutdown_timeout: PositiveFloat = 5.0  # seconds

    def resolved_hostname(self) -> str:
        """Hostname announced in greeting and goodbye lines."""
        return self.hostname or socket.gethostname()


class ReconnectConfig(BaseModel):
    """Backend reconnect backoff configuration."""

    initial_delay: float = Field(default=0.5, ge=0.0)
    max_delay: float = Field(default=30.0, ge=0.0)
    multiplier: float = Field(default=2.0, ge=1.0)
    jitter: float = Field(default=0.1, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def validate_bounds(self) -> "ReconnectConfig":
        """Validate max_delay is not below initial_delay."""
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay must be >= initial_delay")
        return self


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: Literal["json", "console"] = "json"

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate log level is valid."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v.upper()


# =============================================================================
# Main Settings
# =============================================================================


class Settings(BaseSettings):
    """Main settings class.

    Loads configuration from:
    1. Init arguments (merged YAML file and runtime overrides)
    2. Environment variables (SVDRELAY_ prefix)
    3. Defaults defined in Pydantic models
    """

    model_config = SettingsConfigDict(
        env_prefix="SVDRELAY_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    backend: BackendConfig = Field(default_factory=BackendConfig)
    listen: ListenConfig = Field(default_factory=ListenConfig)
    relay: RelayConfig = Field(default_factory=RelayConfig)
    reconnect: ReconnectConfig = Field(default_factory=ReconnectConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# =============================================================================
# Configuration Loading Functions
# =============================================================================


def load_yaml_file(path: Path) -> Dict[str, Any]:
    """Load and parse a YAML file.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed YAML content as dictionary.

    Raises:
        ConfigurationError: If file cannot be read or parsed.
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            content = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigurationError(
            config_path=str(path),
            message=f"Configuration file not found: {path}",
        )
    except yaml.YAMLError as e:
        raise ConfigurationError(
            config_path=str(path),
            message=f"Invalid YAML in {path}: {e}",
        )

    if content is None:
        return {}
    if not isinstance(content, dict):
        raise ConfigurationError(
            config_path=str(path),
            message=f"Configuration root in {path} must be a mapping",
        )
    return content


def merge_configs(*configs: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge multiple configuration dictionaries.

    Later configs override earlier ones.

    Args:
        *configs: Configuration dictionaries to merge.

    Returns:
        Merged configuration dictionary.
    """
    result: Dict[str, Any] = {}

    for config in configs:
        for key, value in config.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = merge_configs(result[key], value)
            else:
                result[key] = value

    return result


def create_settings(
    config_path: Optional[Path] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> Settings:
    """Create a Settings instance with layered configuration.

    Args:
        config_path: Optional path to a YAML config file.
        overrides: Optional runtime overrides dictionary.

    Returns:
        Configured Settings instance.

    Raises:
        ConfigurationError: If configuration is invalid.
    """
    file_config: Dict[str, Any] = {}
    if config_path is not None:
        file_config = load_yaml_file(Path(config_path).expanduser())

    merged = merge_configs(file_config, overrides or {})

    try:
        return Settings(**merged)
    except Exception as e:
        raise ConfigurationError(
            config_path=str(config_path or "<defaults>"),
            message=f"Configuration validation failed: {e}",
        ) from e
