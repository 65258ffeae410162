"""
Configuration management for the provisioning orchestrator.

This module handles loading and validating configuration from files and environment variables.
"""

import os
import yaml
from typing import Optional
from pydantic import BaseModel, Field, field_validator, ConfigDict

from .exceptions import ConfigurationError
from .logging import logger


DEFAULT_CONFIG_PATHS = [
    "~/.config/pve-orchestrator/config.yaml",
    "/etc/pve-orchestrator/config.yaml",
    "config.yaml",
]


class AppConfig(BaseModel):
    """Application configuration with Pydantic validation.

    Configuration can be loaded from:
    1. Explicit config file path
    2. Default config file locations
    3. Environment variables (highest priority)

    Environment variables:
    - PVE_ORCH_API_BASE_URL: Backend API base URL (e.g. https://pve:8006/api2/json)
    - PVE_ORCH_API_TOKEN: API token in ``user@realm!tokenid=secret`` form
    - PVE_ORCH_VERIFY_SSL: Verify the backend TLS certificate (true/false)
    - PVE_ORCH_TIMEOUT: Per-request timeout in seconds
    - PVE_ORCH_DEFAULT_STORAGE: Storage used for new clones
    - PVE_ORCH_LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    - PVE_ORCH_TASK_RETENTION_COUNT: Tasks kept per tenant
    - PVE_ORCH_TASK_RETENTION_DAYS: Age after which tasks are purged
    """

    model_config = ConfigDict(extra="forbid")  # Reject unknown fields

    api_base_url: str = Field(
        default="https://localhost:8006/api2/json", description="Backend API base URL"
    )
    api_token: Optional[str] = Field(default=None, repr=False)
    verify_ssl: bool = True
    request_timeout: float = Field(
        default=30, gt=0, description="Per-request timeout in seconds"
    )
    max_retries: int = Field(default=3, ge=1, description="Read retries on connection errors")
    log_level: str = Field(default="INFO", description="Logging level")

    # Defaults for provisioning operations
    default_storage: str = "NFS"
    full_clone: bool = True
    primary_disk: str = Field(default="scsi0", pattern=r"^(scsi|virtio|sata|ide)\d+$")

    # Wait loop settings
    long_poll_attempts: int = Field(default=120, gt=0)
    long_poll_interval: float = Field(default=5.0, ge=0)
    short_poll_attempts: int = Field(default=300, gt=0)
    short_poll_interval: float = Field(default=1.0, ge=0)
    disk_ready_attempts: int = Field(default=20, gt=0)
    disk_ready_interval: float = Field(default=10.0, ge=0)
    disk_settle_delay: float = Field(
        default=5.0, ge=0, description="Pause between a ready disk and its resize"
    )

    # Task record retention
    task_retention_count: int = Field(default=20, gt=0)
    task_retention_days: int = Field(default=30, gt=0)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        v = v.upper()
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}")
        return v

    @field_validator("api_base_url")
    @classmethod
    def validate_api_base_url(cls, v: str) -> str:
        """Require an http(s) URL and drop any trailing slash."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("api_base_url must start with http:// or https://")
        return v.rstrip("/")


def _to_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"not a boolean: {value}")


class ConfigLoader:
    """Loads and validates configuration."""

    def __init__(self) -> None:
        self.logger = logger

    def load_config(self, config_path: Optional[str] = None) -> AppConfig:
        """
        Load configuration from file and environment variables.

        Priority (highest to lowest):
        1. Environment variables
        2. Config file (explicit path or default locations)
        3. Default values

        Args:
            config_path: Path to configuration file. If None, looks in default locations.

        Returns:
            AppConfig: Loaded configuration
        """
        if config_path:
            config_data = self._load_data_from_file(config_path)
        else:
            config_data = {}
            for path in DEFAULT_CONFIG_PATHS:
                path = os.path.expanduser(path)
                if os.path.exists(path):
                    self.logger.info(f"Loading configuration from {path}", path=path)
                    config_data = self._load_data_from_file(path)
                    break

            if not config_data:
                self.logger.info("No configuration file found, using defaults and environment variables")

        config_data = self._apply_env_overrides(config_data)

        try:
            return AppConfig(**config_data)
        except ValueError as e:
            self.logger.error(f"Invalid configuration: {e}", exc_info=True)
            raise ConfigurationError(f"Invalid configuration: {e}")

    def _apply_env_overrides(self, config_data: dict) -> dict:
        """Apply environment variable overrides to config data."""
        env_mappings = {
            'PVE_ORCH_API_BASE_URL': 'api_base_url',
            'PVE_ORCH_API_TOKEN': 'api_token',
            'PVE_ORCH_VERIFY_SSL': ('verify_ssl', _to_bool),
            'PVE_ORCH_TIMEOUT': ('request_timeout', float),
            'PVE_ORCH_DEFAULT_STORAGE': 'default_storage',
            'PVE_ORCH_LOG_LEVEL': 'log_level',
            'PVE_ORCH_TASK_RETENTION_COUNT': ('task_retention_count', int),
            'PVE_ORCH_TASK_RETENTION_DAYS': ('task_retention_days', int),
        }

        for env_var, mapping in env_mappings.items():
            env_value = os.getenv(env_var)
            if env_value is None:
                continue
            if isinstance(mapping, tuple):
                config_key, converter = mapping
                try:
                    config_data[config_key] = converter(env_value)
                    self.logger.debug(f"Applied environment override: {env_var}")
                except (ValueError, TypeError) as e:
                    self.logger.warning(
                        f"Invalid value for {env_var}: {env_value}, ignoring. Error: {e}"
                    )
            else:
                config_data[mapping] = env_value
                self.logger.debug(f"Applied environment override: {env_var}")

        return config_data

    def _load_data_from_file(self, path: str) -> dict:
        """Load configuration data from a specific file."""
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            self.logger.error(
                f"Failed to parse configuration file {path}: {e}",
                path=path,
                exc_info=True,
            )
            raise ConfigurationError(f"Failed to parse configuration file: {e}")
        except OSError as e:
            self.logger.error(
                f"Failed to load configuration from {path}: {e}",
                path=path,
                exc_info=True,
            )
            raise ConfigurationError(f"Failed to load configuration: {e}")

        if data is None:
            # Empty file
            return {}

        if not isinstance(data, dict):
            raise ConfigurationError(f"Invalid configuration format in {path}")

        return data


# Global config loader
config_loader = ConfigLoader()
