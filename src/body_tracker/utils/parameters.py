"""
Configuration and parameter loading using Pydantic.

This module provides centralized configuration management for the library.
Parameters are loaded from YAML and validated using Pydantic models. Every
section carries defaults, so an empty file (or no file at all) is valid.
"""

from pathlib import Path

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from body_tracker.utils.exceptions import ConfigurationError


class StorageConfig(BaseModel):
    """Local durable store configuration."""

    data_dir: str = "~/.local/share/body-tracker"


class RemoteConfig(BaseModel):
    """Remote document store configuration (content-addressed file API)."""

    api_url: str = "https://api.github.com"
    path: str = "body-tracker.json"
    branch: str = "main"
    timeout_seconds: float = Field(default=15.0, gt=0)
    commit_message: str = "Update body tracker data"


class SyncConfig(BaseModel):
    """Sync scheduling configuration."""

    debounce_seconds: float = Field(default=5.0, ge=0)
    status_clear_seconds: float = Field(default=3.0, ge=0)


class AnalyticsConfig(BaseModel):
    """Analytics configuration."""

    rolling_window: int = Field(default=5, ge=1)
    streak_max_misses: int = Field(default=2, ge=0)
    timezone: str = "UTC"


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    file: str | None = None
    console: bool = True


class AppConfig(BaseSettings):
    """Main application configuration."""

    storage: StorageConfig = Field(default_factory=StorageConfig)
    remote: RemoteConfig = Field(default_factory=RemoteConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    analytics: AnalyticsConfig = Field(default_factory=AnalyticsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="BT_", env_nested_delimiter="__", case_sensitive=False
    )


class ParameterLoader:
    """
    Centralized parameter loader.

    Loads and validates configuration from YAML files using Pydantic models.
    Provides type-safe access to all configuration sections.
    """

    def __init__(self, config_path: str = "config/config.yaml") -> None:
        """
        Initialize parameter loader.

        Args:
            config_path: Path to the YAML configuration file.

        Raises:
            ConfigurationError: If configuration file cannot be loaded or is invalid.
        """
        self.config_path = Path(config_path)
        self.config: AppConfig
        self._load_config()

    def _load_config(self) -> None:
        """
        Load configuration from YAML file.

        Raises:
            ConfigurationError: If configuration file cannot be loaded or is invalid.
        """
        if not self.config_path.exists():
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")

        try:
            with open(self.config_path, encoding="utf-8") as f:
                config_dict = yaml.safe_load(f) or {}

            if not isinstance(config_dict, dict):
                raise ConfigurationError(
                    f"Configuration root must be a mapping: {self.config_path}"
                )

            self.config = AppConfig(**config_dict)

        except ConfigurationError:
            raise
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse YAML configuration: {e}") from e
        except Exception as e:
            raise ConfigurationError(f"Failed to load configuration: {e}") from e

    def get_remote_config(self) -> RemoteConfig:
        """Get remote store configuration."""
        return self.config.remote

    def get_sync_config(self) -> SyncConfig:
        """Get sync scheduling configuration."""
        return self.config.sync

    def get_analytics_config(self) -> AnalyticsConfig:
        """Get analytics configuration."""
        return self.config.analytics

    def get_logging_config(self) -> LoggingConfig:
        """Get logging configuration."""
        return self.config.logging
