"""
Configuration management for pma-up.

Configuration is loaded from multiple sources with layered precedence:
1. Built-in defaults (Pydantic model defaults)
2. YAML config file (/etc/pma-up/config.yml or an explicit path)
3. Environment variables (PMA_UP_* prefix, __ for nesting)

The two positional CLI arguments (installation root and config file path) are
per-run inputs and are not part of this configuration.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

DEFAULT_CONFIG_PATH = Path("/etc/pma-up/config.yml")
DEFAULT_VERSION_URL = "https://www.phpmyadmin.net/home_page/version.txt"
DEFAULT_ARCHIVE_NAME_TEMPLATE = "phpMyAdmin-{version}-all-languages.zip"

# =============================================================================
# Updater Configuration
# =============================================================================


class UpdaterConfig(BaseModel):
    """Update pipeline configuration.

    Attributes:
        version_url: Endpoint serving the three-line release descriptor.
        fetch_timeout_seconds: Timeout for the descriptor request.
        download_timeout_seconds: Timeout for the archive download.
        archive_name_template: File name for the downloaded archive.
        scratch_dir: Parent directory for scratch workspaces (None = system temp).
        scratch_prefix: Name prefix of each scratch workspace.
        restore_on_swap_failure: Move the backup back into place once if the
            swap stage fails.
    """

    version_url: str = Field(
        default=DEFAULT_VERSION_URL,
        description="URL of the plaintext release descriptor (version, date, URL)",
    )
    fetch_timeout_seconds: float = Field(
        default=15.0,
        gt=0,
        description="Timeout in seconds for fetching the release descriptor",
    )
    download_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Timeout in seconds for downloading the release archive",
    )
    archive_name_template: str = Field(
        default=DEFAULT_ARCHIVE_NAME_TEMPLATE,
        description="Archive file name; '{version}' is replaced by the release version",
    )
    scratch_dir: str | None = Field(
        default=None,
        description="Parent directory for scratch workspaces (default: system temp dir)",
    )
    scratch_prefix: str = Field(
        default="pma-up-",
        description="Prefix for scratch workspace directory names",
    )
    restore_on_swap_failure: bool = Field(
        default=False,
        description="Attempt one restore from the backup when the swap stage fails",
    )

    @field_validator("archive_name_template")
    @classmethod
    def validate_archive_name_template(cls, v: str) -> str:
        """Require a version placeholder and a plain file name."""
        if "{version}" not in v:
            raise ValueError("archive_name_template must contain '{version}'")
        if "/" in v or "\\" in v:
            raise ValueError("archive_name_template must be a file name, not a path")
        return v


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level.
        json_format: Emit JSON lines instead of plain text.
        log_to_stdout: Whether to log to stdout.
    """

    level: str = Field(
        default="info",
        description="Log level: debug, info, warn, error",
    )
    json_format: bool = Field(
        default=False,
        description="Emit JSON-formatted log lines",
    )
    log_to_stdout: bool = Field(
        default=True,
        description="Whether to log to stdout",
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
# Main Application Configuration
# =============================================================================


class AppConfig(BaseModel):
    """
    Main application configuration model.

    Attributes:
        updater: Update pipeline settings.
        logging: Logging configuration.
    """

    updater: UpdaterConfig = Field(
        default_factory=UpdaterConfig,
        description="Update pipeline settings",
    )
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig,
        description="Logging configuration",
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

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        yaml.YAMLError: If the YAML is invalid.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def _parse_env_value(value: str) -> Any:
    """
    Parse an environment variable value to appropriate Python type.

    Args:
        value: String value from environment variable.

    Returns:
        Parsed value (bool, int, float, or string).
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


def _load_env_config(prefix: str = "PMA_UP_") -> dict[str, Any]:
    """
    Load configuration from environment variables.

    Environment variables are parsed with the following rules:
    - Prefix: PMA_UP_ (configurable)
    - Nested keys: Double underscore (__) separator
    - Example: PMA_UP_UPDATER__DOWNLOAD_TIMEOUT_SECONDS=120

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


def load_config(
    config_path: Path | str | None = None,
    env_prefix: str = "PMA_UP_",
) -> AppConfig:
    """
    Load configuration from all sources with layered precedence.

    Args:
        config_path: Path to YAML configuration file. If None, the default
            path is used when it exists.
        env_prefix: Prefix for environment variables.

    Returns:
        Fully configured AppConfig instance.

    Raises:
        FileNotFoundError: If the specified config file doesn't exist.
        ValidationError: If configuration is invalid.

    Example:
        >>> config = load_config()
        >>> print(config.updater.fetch_timeout_seconds)
        15.0
    """
    config_dict: dict[str, Any] = {}

    if config_path is None:
        if DEFAULT_CONFIG_PATH.exists():
            config_path = DEFAULT_CONFIG_PATH
    elif isinstance(config_path, str):
        config_path = Path(config_path)

    if config_path is not None:
        config_dict = _deep_merge(config_dict, _load_yaml_config(config_path))

    config_dict = _deep_merge(config_dict, _load_env_config(env_prefix))

    return AppConfig(**config_dict)
