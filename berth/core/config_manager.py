"""
Configuration management for Berth.

Handles loading, validation, and access to project and service settings.
"""

import os
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional, List, Union
from enum import Enum

import yaml
from pydantic import BaseModel, Field, field_validator, ValidationError, ConfigDict

logger = logging.getLogger(__name__)


class LogLevel(str, Enum):
    """Valid log levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LabelKeys(BaseModel):
    """Reserved label keys stamped on containers for later discovery."""
    container: str = "io.berth.container-name"
    service: str = "io.berth.service"
    project: str = "io.berth.project"

    model_config = ConfigDict(frozen=True)


class ServiceConfig(BaseModel):
    """Desired configuration of one service."""
    image: str
    command: Optional[Union[str, List[str]]] = None
    environment: Dict[str, str] = Field(default_factory=dict)
    labels: Dict[str, str] = Field(default_factory=dict)
    tty: bool = False
    links: List[str] = Field(
        default_factory=list,
        description="Linked services as 'service' or 'service:alias'"
    )
    ipc: Optional[str] = Field(
        default=None,
        description="'service:<name>' to share another service's IPC namespace, or a raw engine mode"
    )
    network_mode: Optional[str] = Field(
        default=None,
        description="'service:<name>' to share another service's network namespace, or a raw engine mode"
    )

    @field_validator("image")
    @classmethod
    def validate_image(cls, v: str) -> str:
        """Image is required."""
        if not v or not v.strip():
            raise ValueError("Service image is required")
        return v.strip()

    @field_validator("environment", mode="before")
    @classmethod
    def normalize_environment(cls, v: Any) -> Any:
        """Accept the list form (KEY=VALUE) as well as a mapping."""
        if isinstance(v, list):
            env = {}
            for item in v:
                key, _, value = str(item).partition("=")
                env[key] = value
            return env
        return v

    def to_create_request(self) -> Dict[str, Any]:
        """
        Translate into the keyword arguments of a container create call.

        The host config is in engine format. Links and service-scoped modes
        are left for the dependency resolver to fill in.
        """
        host_config: Dict[str, Any] = {"Links": []}
        if self.ipc and not self.ipc.startswith("service:"):
            host_config["IpcMode"] = self.ipc
        if self.network_mode and not self.network_mode.startswith("service:"):
            host_config["NetworkMode"] = self.network_mode

        return {
            "image": self.image,
            "command": self.command,
            "environment": dict(self.environment),
            "labels": dict(self.labels),
            "tty": self.tty,
            "host_config": host_config,
        }


class ProjectSettings(BaseModel):
    """Project-wide lifecycle settings."""
    name: str = "default"
    timeout: int = Field(
        default=10,
        ge=0,
        description="Grace period in seconds for stop and restart"
    )
    log: bool = Field(default=True, description="Forward container output after start")
    strict_dependencies: bool = Field(
        default=False,
        description="Fail instead of warning when a relationship targets an undeclared service"
    )

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Project names become part of container names."""
        v = v.strip().lower()
        if not v:
            raise ValueError("Project name must not be empty")
        if not all(c.isalnum() or c in "-_" for c in v):
            raise ValueError("Project name may only contain letters, digits, '-' and '_'")
        return v


class DockerSettings(BaseModel):
    """Connection to the container engine."""
    base_url: Optional[str] = None
    timeout: int = 60
    config_path: Optional[str] = Field(
        default=None,
        description="Docker client config.json holding registry credentials"
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: LogLevel = LogLevel.INFO
    format: str = "text"
    file: Optional[str] = None
    rotation_size: str = "10MB"
    rotation_count: int = 5
    module_levels: Optional[Dict[str, str]] = Field(
        default=None,
        description="Per-module log levels, e.g., {'berth.core.dependencies': 'DEBUG'}"
    )


class BerthConfig(BaseModel):
    """Main Berth configuration schema."""

    version: str = Field(default="0.1.0", description="Configuration version")

    project: ProjectSettings = Field(default_factory=ProjectSettings)

    docker: DockerSettings = Field(default_factory=DockerSettings)

    labels: LabelKeys = Field(default_factory=LabelKeys)

    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    services: Dict[str, ServiceConfig] = Field(default_factory=dict)

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        """Validate version format."""
        parts = v.split(".")
        if len(parts) != 3:
            raise ValueError("Version must be in format x.y.z")
        for part in parts:
            if not part.isdigit():
                raise ValueError("Version components must be numeric")
        return v

    model_config = ConfigDict(use_enum_values=True)


class ConfigManager:
    """
    Manages Berth configuration loading and validation.

    Configuration precedence (highest to lowest):
    1. CLI arguments
    2. Environment variables (BERTH_*)
    3. Configuration file (YAML/JSON)
    4. Defaults
    """

    def __init__(self):
        self._config: Optional[BerthConfig] = None
        self._config_file: Optional[Path] = None

    def load(
        self,
        config_file: Optional[str] = None,
        cli_overrides: Optional[Dict[str, Any]] = None
    ) -> BerthConfig:
        """
        Load and validate configuration from multiple sources.

        Args:
            config_file: Path to configuration file (YAML or JSON)
            cli_overrides: Dictionary of CLI argument overrides

        Returns:
            Validated BerthConfig instance

        Raises:
            ValidationError: If configuration is invalid
            FileNotFoundError: If specified config file doesn't exist
        """
        logger.info("Loading Berth configuration")

        config_dict: Dict[str, Any] = {}

        if config_file:
            config_dict = self._load_from_file(config_file)
            self._config_file = Path(config_file)
            logger.info(f"Loaded configuration from file: {config_file}")

        env_config = self._load_from_env()
        config_dict = self._merge_configs(config_dict, env_config)
        if env_config:
            logger.info(f"Applied {len(env_config)} environment variable overrides")

        if cli_overrides:
            config_dict = self._merge_configs(config_dict, cli_overrides)
            logger.info(f"Applied {len(cli_overrides)} CLI argument overrides")

        try:
            self._config = BerthConfig(**config_dict)
            logger.info("Configuration validated successfully")
            self._log_configuration()
            return self._config
        except ValidationError as e:
            logger.error(f"Configuration validation failed: {e}")
            raise

    def _load_from_file(self, file_path: str) -> Dict[str, Any]:
        """Load configuration from YAML or JSON file."""
        path = Path(file_path)

        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {file_path}")

        with open(path, 'r') as f:
            if path.suffix in ['.yaml', '.yml']:
                return yaml.safe_load(f) or {}
            elif path.suffix == '.json':
                return json.load(f)
            else:
                raise ValueError(f"Unsupported config file format: {path.suffix}")

    def _load_from_env(self) -> Dict[str, Any]:
        """Load configuration from environment variables."""
        config: Dict[str, Any] = {}

        # Project settings
        if project_name := os.getenv("BERTH_PROJECT_NAME"):
            config.setdefault("project", {})["name"] = project_name
        if timeout := os.getenv("BERTH_TIMEOUT"):
            config.setdefault("project", {})["timeout"] = int(timeout)
        if log := os.getenv("BERTH_LOG"):
            config.setdefault("project", {})["log"] = log.lower() in ['true', '1', 'yes']

        # Logging configuration
        if log_level := os.getenv("BERTH_LOG_LEVEL"):
            config.setdefault("logging", {})["level"] = log_level.upper()
        if log_file := os.getenv("BERTH_LOG_FILE"):
            config.setdefault("logging", {})["file"] = log_file

        # Engine connection
        if docker_host := os.getenv("BERTH_DOCKER_HOST"):
            config.setdefault("docker", {})["base_url"] = docker_host
        if docker_config := os.getenv("BERTH_DOCKER_CONFIG"):
            config.setdefault("docker", {})["config_path"] = docker_config

        return config

    def _merge_configs(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two configuration dictionaries."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_configs(result[key], value)
            else:
                result[key] = value

        return result

    def _log_configuration(self) -> None:
        """Log the loaded configuration (with environment values redacted)."""
        if not self._config:
            return

        config_dict = self._config.model_dump()

        # Service environments routinely carry secrets
        for service in config_dict.get("services", {}).values():
            if service.get("environment"):
                service["environment"] = {key: "***REDACTED***" for key in service["environment"]}

        logger.debug(f"Active configuration: {json.dumps(config_dict, indent=2)}")

    def get_config(self) -> BerthConfig:
        """
        Get the loaded configuration.

        Returns:
            BerthConfig instance

        Raises:
            RuntimeError: If configuration hasn't been loaded
        """
        if self._config is None:
            raise RuntimeError("Configuration not loaded. Call load() first.")
        return self._config

    def reload(self) -> BerthConfig:
        """
        Reload configuration from the same sources.

        Returns:
            Reloaded BerthConfig instance
        """
        config_file = str(self._config_file) if self._config_file else None
        return self.load(config_file=config_file)
