"""
Configuration management for the Luffy OTA engine.

This module implements the AppConfig Pydantic model and configuration loading.

Configuration is loaded from multiple sources with layered precedence:
1. Built-in defaults (Pydantic model defaults)
2. YAML config file (/etc/luffy/ota.yml or --config path)
3. Environment variables (LUFFY_OTA_* prefix, __ for nesting)
4. Command-line arguments (highest precedence)

Any failure to load or validate the configuration is raised as
ConfigurationError; it is the only fatal error of the engine.
"""

from __future__ import annotations

import argparse
import os
import re
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from luffy_ota.errors import ConfigurationError

DEFAULT_CONFIG_PATH = Path("/etc/luffy/ota.yml")
DEFAULT_ENV_PREFIX = "LUFFY_OTA_"

_GITHUB_REPO_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$")


class UpdateStrategy(str, Enum):
    """
    Update automation mode.

    - auto: check on every tick and install eligible updates
    - manual: check on every tick and only report availability
    - disabled: no periodic checks; only explicit triggers do anything
    """

    AUTO = "auto"
    MANUAL = "manual"
    DISABLED = "disabled"


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level.
        log_to_stdout: Whether to log to stdout.
        json_format: Whether to emit JSON log lines.
    """

    level: str = Field(
        default="info",
        description="Log level: debug, info, warning, error",
    )
    log_to_stdout: bool = Field(
        default=True,
        description="Whether to log to stdout",
    )
    json_format: bool = Field(
        default=True,
        description="Emit JSON log lines instead of plain text",
    )

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        valid_levels = {"debug", "info", "warn", "warning", "error", "critical"}
        v_lower = v.lower()
        if v_lower not in valid_levels:
            raise ValueError(
                f"Invalid log level: {v}. Must be one of: {', '.join(sorted(valid_levels))}"
            )
        if v_lower == "warn":
            return "warning"
        return v_lower


# =============================================================================
# OTA Configuration
# =============================================================================


class OtaConfig(BaseModel):
    """Update engine configuration.

    Attributes:
        strategy: Update strategy (auto, manual, disabled).
        check_interval: Seconds between update checks.
        github_repo: Release repository as "owner/repo".
        api_base_url: Base URL of the release index API.
        token_env: Environment variable holding the release index token.
        download_dir: Working directory for package artifacts.
        backup_count: Number of backup artifacts kept per package.
        request_timeout: Timeout for release index and download requests.
        allow_downgrade: Whether older releases may replace newer installs.
        run_once: Run a single update cycle and exit.
    """

    strategy: UpdateStrategy = Field(
        default=UpdateStrategy.MANUAL,
        description="Update strategy: 'auto', 'manual' or 'disabled'",
    )
    check_interval: int = Field(
        default=3600,
        ge=1,
        description="Seconds between update checks",
    )
    github_repo: str = Field(
        default="marinethinking/luffy",
        description="Release repository in 'owner/repo' form",
    )
    api_base_url: str = Field(
        default="https://api.github.com",
        description="Base URL of the release index API",
    )
    token_env: str = Field(
        default="LUFFY_GITHUB_TOKEN",
        description="Environment variable holding the bearer token for the release index",
    )
    download_dir: str = Field(
        default="/home/luffy/.deb",
        description="Working directory for downloaded, backup and installed packages",
    )
    backup_count: int = Field(
        default=2,
        ge=0,
        description="Number of backup artifacts kept per package",
    )
    request_timeout: float = Field(
        default=60.0,
        gt=0,
        description="Timeout in seconds for release index and download requests",
    )
    allow_downgrade: bool = Field(
        default=False,
        description="Allow older releases to replace newer installs (reported only)",
    )
    run_once: bool = Field(
        default=False,
        description="Run a single update cycle and exit",
    )

    @field_validator("strategy", mode="before")
    @classmethod
    def normalize_strategy(cls, v: Any) -> Any:
        """Accept strategy names case-insensitively (e.g. 'Auto')."""
        if isinstance(v, str):
            v_lower = v.strip().lower()
            valid = {s.value for s in UpdateStrategy}
            if v_lower not in valid:
                raise ValueError(
                    f"Invalid update strategy: {v}. Must be one of: {', '.join(sorted(valid))}"
                )
            return v_lower
        return v

    @field_validator("github_repo")
    @classmethod
    def validate_github_repo(cls, v: str) -> str:
        """Validate the repository identifier."""
        if not _GITHUB_REPO_PATTERN.match(v):
            raise ValueError(f"Invalid release repository: {v}. Expected 'owner/repo'")
        return v

    @field_validator("api_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Normalize the API base URL."""
        return v.rstrip("/")


# =============================================================================
# Services Configuration
# =============================================================================


class ServiceUpdateConfig(BaseModel):
    """Per-service update settings.

    Attributes:
        enabled: Whether automatic updates are enabled for the service.
    """

    enabled: bool = Field(
        default=True,
        description="Whether automatic updates are enabled for this service",
    )


class ServicesConfig(BaseModel):
    """Update eligibility flags for the services managed by the engine.

    The launcher has no flag here: it is never updated by the automatic
    path and can only be updated through an explicit trigger.
    """

    gateway: ServiceUpdateConfig = Field(
        default_factory=ServiceUpdateConfig,
        description="Gateway service settings",
    )
    media: ServiceUpdateConfig = Field(
        default_factory=ServiceUpdateConfig,
        description="Media bridge service settings",
    )
    other: ServiceUpdateConfig = Field(
        default_factory=ServiceUpdateConfig,
        description="Settings for packages outside the known service roles",
    )


# =============================================================================
# Main Application Configuration
# =============================================================================


class AppConfig(BaseModel):
    """
    Main application configuration model.

    Attributes:
        logging: Logging configuration.
        ota: Update engine configuration.
        services: Per-service update flags.
    """

    logging: LoggingConfig = Field(
        default_factory=LoggingConfig,
        description="Logging configuration",
    )
    ota: OtaConfig = Field(
        default_factory=OtaConfig,
        description="Update engine configuration",
    )
    services: ServicesConfig = Field(
        default_factory=ServicesConfig,
        description="Per-service update flags",
    )


# =============================================================================
# Configuration Loading Functions
# =============================================================================


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Args:
        base: The base dictionary.
        override: The dictionary with values to override.

    Returns:
        A new dictionary with merged values.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """
    Load configuration from a YAML file.

    Args:
        config_path: Path to the YAML configuration file.

    Returns:
        Dictionary with configuration values.

    Raises:
        ConfigurationError: If the file is missing or not valid YAML.
    """
    if not config_path.exists():
        raise ConfigurationError(
            f"Configuration file not found: {config_path}",
            details={"path": str(config_path)},
        )

    try:
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(
            f"Invalid YAML in configuration file: {config_path}",
            details={"path": str(config_path), "error": str(e)},
        ) from e

    if not isinstance(data, dict):
        raise ConfigurationError(
            "Configuration file must contain a mapping",
            details={"path": str(config_path)},
        )
    return data


def _parse_env_value(value: str) -> Any:
    """
    Parse an environment variable value to an appropriate Python type.

    Args:
        value: String value from environment variable.

    Returns:
        Parsed value (bool, int, float or string).
    """
    if value.lower() in ("true", "yes", "on"):
        return True
    if value.lower() in ("false", "no", "off"):
        return False

    try:
        return int(value)
    except ValueError:
        pass

    try:
        return float(value)
    except ValueError:
        pass

    return value


def _load_env_config(prefix: str = DEFAULT_ENV_PREFIX) -> dict[str, Any]:
    """
    Load configuration from environment variables.

    - Prefix: LUFFY_OTA_ (configurable)
    - Nested keys: double underscore (__) separator
    - Example: LUFFY_OTA_OTA__STRATEGY=auto

    Args:
        prefix: Environment variable prefix.

    Returns:
        Dictionary with configuration values.
    """
    result: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue

        parts = key[len(prefix) :].lower().split("__")

        current = result
        for part in parts[:-1]:
            current = current.setdefault(part, {})

        current[parts[-1]] = _parse_env_value(value)

    return result


def _parse_cli_args(args: list[str] | None = None) -> dict[str, Any]:
    """
    Parse command-line arguments.

    Args:
        args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Dictionary with parsed arguments.
    """
    parser = argparse.ArgumentParser(
        prog="luffy-ota",
        description="Luffy over-the-air update engine",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "--config",
        "-c",
        type=str,
        help="Path to configuration file",
    )

    parser.add_argument(
        "--log-level",
        type=str,
        choices=["debug", "info", "warning", "error"],
        help="Override log level",
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging in plain-text format",
    )

    parser.add_argument(
        "--strategy",
        type=str,
        choices=[s.value for s in UpdateStrategy],
        help="Override update strategy",
    )

    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single update cycle and exit",
    )

    parsed = parser.parse_args(args)

    result: dict[str, Any] = {}

    if parsed.config:
        result["_config_path"] = parsed.config

    if parsed.log_level:
        result["logging"] = {"level": parsed.log_level}

    if parsed.debug:
        result.setdefault("logging", {})
        result["logging"]["level"] = "debug"
        result["logging"]["json_format"] = False

    if parsed.strategy:
        result.setdefault("ota", {})["strategy"] = parsed.strategy

    if parsed.once:
        result.setdefault("ota", {})["run_once"] = True

    return result


def load_config(
    config_path: Path | str | None = None,
    env_prefix: str = DEFAULT_ENV_PREFIX,
    cli_args: list[str] | None = None,
) -> AppConfig:
    """
    Load configuration from all sources with layered precedence.

    Args:
        config_path: Path to YAML configuration file. If None, uses the
            --config argument or the default path when it exists.
        env_prefix: Prefix for environment variables.
        cli_args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Fully validated AppConfig instance.

    Raises:
        ConfigurationError: If a source cannot be read or the merged
            configuration is invalid.

    Example:
        >>> config = load_config(config_path="/etc/luffy/ota.yml", cli_args=[])
        >>> config.ota.strategy
        <UpdateStrategy.AUTO: 'auto'>
    """
    config_dict: dict[str, Any] = {}

    cli_config = _parse_cli_args(cli_args)

    if config_path is None:
        if "_config_path" in cli_config:
            config_path = Path(cli_config.pop("_config_path"))
        elif DEFAULT_CONFIG_PATH.exists():
            config_path = DEFAULT_CONFIG_PATH
    else:
        cli_config.pop("_config_path", None)
        config_path = Path(config_path)

    if config_path is not None:
        config_dict = _deep_merge(config_dict, _load_yaml_config(config_path))

    config_dict = _deep_merge(config_dict, _load_env_config(env_prefix))
    config_dict = _deep_merge(config_dict, cli_config)

    try:
        return AppConfig(**config_dict)
    except ValidationError as e:
        raise ConfigurationError(
            "Invalid configuration",
            details={"errors": e.errors(include_url=False)},
        ) from e
