"""
Configuration and parameter loading using Pydantic.

This module provides centralized configuration management for the sync core.
All parameters are loaded from YAML and validated using Pydantic models.
"""

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from personal_health_sync.utils.exceptions import ConfigurationError


class StorageConfig(BaseModel):
    """Durable key-value storage configuration."""

    backend: str = Field("file", pattern="^(file|memory)$")
    dir: str = "data/store"


class CryptoConfig(BaseModel):
    """Envelope encryption configuration."""

    pbkdf2_iterations: int = Field(100_000, ge=1)
    record_names: list[str] = Field(
        default_factory=lambda: ["measurements", "context_factors"]
    )


class SyncConfig(BaseModel):
    """Sync queue and retry policy configuration."""

    max_retries: int = Field(3, ge=1)
    sync_immediately: bool = True
    deferred_run_tag: str = "blood-pressure-sync"
    record_routes: dict[str, str] = Field(
        default_factory=lambda: {
            "measurement": "measurements",
            "context-factors": "context_factors",
        }
    )


class TransportConfig(BaseModel):
    """Delivery transport configuration."""

    mode: str = Field("local", pattern="^(local|http)$")
    endpoint_url: str | None = None
    timeout_seconds: float = Field(10.0, gt=0)


class ConnectivityConfig(BaseModel):
    """Connectivity detection configuration."""

    mode: str = Field("manual", pattern="^(manual|http)$")
    assume_online: bool = True
    probe_url: str | None = None
    probe_timeout_seconds: float = Field(3.0, gt=0)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    file: str | None = None
    console: bool = True
    http_level: str = "WARNING"


class AppConfig(BaseSettings):
    """Main application configuration."""

    storage: StorageConfig = Field(default_factory=StorageConfig)
    crypto: CryptoConfig = Field(default_factory=CryptoConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    transport: TransportConfig = Field(default_factory=TransportConfig)
    connectivity: ConnectivityConfig = Field(default_factory=ConnectivityConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="PHS_", env_nested_delimiter="__", case_sensitive=False
    )


class ParameterLoader:
    """
    Centralized parameter loader for the application.

    Loads and validates configuration from YAML files using Pydantic models.
    Provides type-safe access to all configuration parameters.
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

            self.config = AppConfig(**config_dict)

        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse YAML configuration: {e}") from e
        except Exception as e:
            raise ConfigurationError(f"Failed to load configuration: {e}") from e

    def get_storage_config(self) -> StorageConfig:
        """Get durable storage configuration."""
        return self.config.storage

    def get_crypto_config(self) -> CryptoConfig:
        """Get encryption configuration."""
        return self.config.crypto

    def get_sync_config(self) -> SyncConfig:
        """Get sync policy configuration."""
        return self.config.sync

    def get_transport_config(self) -> TransportConfig:
        """Get delivery transport configuration."""
        return self.config.transport

    def get_connectivity_config(self) -> ConnectivityConfig:
        """Get connectivity detection configuration."""
        return self.config.connectivity

    def get_logging_config(self) -> LoggingConfig:
        """Get logging configuration."""
        return self.config.logging

    def get_raw_config(self) -> dict[str, Any]:
        """
        Get raw configuration dictionary.

        Returns:
            Dictionary representation of the configuration.
        """
        return self.config.model_dump()
