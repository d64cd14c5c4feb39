"""Configuration management for deployguard.

This module defines the configuration schema using Pydantic settings,
supporting TOML files, environment variables, and programmatic overrides.

Configuration loading priority (highest to lowest):
1. Programmatic overrides (passed to DeployguardConfig constructor)
2. Environment variables (DEPLOYGUARD_* prefix)
3. TOML configuration file
4. Default values defined in this module

Example TOML configuration:
    [project]
    project_dir = "/opt/theia-app"
    manifest_file = "package.json"

    [backup]
    backup_dir = "/var/backups/theia"
    max_backups = 5

Example environment variable override:
    DEPLOYGUARD_BACKUP__MAX_BACKUPS=10
    DEPLOYGUARD_HEALTH__INTERVAL_SECONDS=5
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import tomli
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LoggingConfig(BaseSettings):
    """Logging configuration.

    Attributes:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: Log format (json or console)
        file: Optional log file path (None for stdout only)
        rotation_size_mb: Log file rotation size in megabytes
        retention_count: Number of rotated log files to keep
    """

    model_config = SettingsConfigDict(
        env_prefix="DEPLOYGUARD_LOGGING__",
        extra="forbid",
    )

    level: str = Field(default="INFO")
    format: str = Field(default="console")
    file: Path | None = Field(default=None)
    rotation_size_mb: int = Field(default=50, ge=1, le=1000)
    retention_count: int = Field(default=10, ge=1, le=100)

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate log level is recognized."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v_upper

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        """Validate log format is recognized."""
        valid_formats = {"json", "console"}
        v_lower = v.lower()
        if v_lower not in valid_formats:
            raise ValueError(f"Invalid log format: {v}. Must be one of {valid_formats}")
        return v_lower


class ProjectConfig(BaseSettings):
    """Deployed project configuration.

    Attributes:
        project_dir: Git checkout holding the compose project
        remote: Name of the git remote holding the source of truth
        branches: Remote branches to track, first existing one wins
        manifest_file: File that must exist after pulling a new revision
        require_root: Refuse to run unless the effective user is root
        workspace_dir: Directory whose disk usage is reported after an update
    """

    model_config = SettingsConfigDict(
        env_prefix="DEPLOYGUARD_PROJECT__",
        extra="forbid",
    )

    project_dir: Path = Field(default=Path("/opt/theia-app"))
    remote: str = Field(default="origin")
    branches: list[str] = Field(default_factory=lambda: ["main", "master"])
    manifest_file: str = Field(default="package.json")
    require_root: bool = Field(default=False)
    workspace_dir: Path | None = Field(default=None)

    @field_validator("branches")
    @classmethod
    def validate_branches(cls, v: list[str]) -> list[str]:
        """Require at least one branch to track."""
        if not v:
            raise ValueError("At least one tracking branch is required")
        return v


class BackupConfig(BaseSettings):
    """Backup archive configuration.

    Attributes:
        backup_dir: Directory holding the backup archives
        max_backups: Number of most recent archives to retain
        name_prefix: Prefix of archive names
        artifacts: Project-relative files captured in each backup
    """

    model_config = SettingsConfigDict(
        env_prefix="DEPLOYGUARD_BACKUP__",
        extra="forbid",
    )

    backup_dir: Path = Field(default=Path("/var/backups/deployguard"))
    max_backups: int = Field(default=5, ge=1, le=100)
    name_prefix: str = Field(default="deploy")
    artifacts: list[str] = Field(
        default_factory=lambda: ["docker-compose.yml", ".env", "Dockerfile"]
    )

    @field_validator("name_prefix")
    @classmethod
    def validate_name_prefix(cls, v: str) -> str:
        """Reject prefixes that would produce nested archive paths."""
        if not v or "/" in v:
            raise ValueError(f"Invalid backup name prefix: {v!r}")
        return v


class DockerConfig(BaseSettings):
    """Docker operations configuration.

    Attributes:
        compose_file: Compose file name, relative to the project directory
        service_name: Compose service whose health gates an update
        rootless: Use rootless Docker daemon
        build_timeout_seconds: Build operation timeout in seconds
        command_timeout_seconds: Timeout for up/down/ps commands in seconds
    """

    model_config = SettingsConfigDict(
        env_prefix="DEPLOYGUARD_DOCKER__",
        extra="forbid",
    )

    compose_file: str = Field(default="docker-compose.yml")
    service_name: str = Field(default="theia")
    rootless: bool = Field(default=False)
    build_timeout_seconds: int = Field(default=1800, ge=60, le=7200)
    command_timeout_seconds: int = Field(default=180, ge=10, le=3600)


class HealthConfig(BaseSettings):
    """Health polling configuration.

    Attributes:
        max_attempts: Number of status queries before timing out
        interval_seconds: Delay between consecutive status queries
    """

    model_config = SettingsConfigDict(
        env_prefix="DEPLOYGUARD_HEALTH__",
        extra="forbid",
    )

    max_attempts: int = Field(default=30, ge=1, le=1000)
    interval_seconds: float = Field(default=2.0, gt=0.0, le=300.0)


class DeployguardConfig(BaseSettings):
    """Root configuration for deployguard.

    Environment variable format for nested config:
        DEPLOYGUARD_<SECTION>__<KEY>=value

    Example:
        DEPLOYGUARD_PROJECT__PROJECT_DIR="/srv/app"
        DEPLOYGUARD_DOCKER__SERVICE_NAME="web"
    """

    model_config = SettingsConfigDict(
        env_prefix="DEPLOYGUARD_",
        env_nested_delimiter="__",
        extra="forbid",
    )

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    project: ProjectConfig = Field(default_factory=ProjectConfig)
    backup: BackupConfig = Field(default_factory=BackupConfig)
    docker: DockerConfig = Field(default_factory=DockerConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)


def load_config(config_path: Path | None = None) -> DeployguardConfig:
    """Load configuration from TOML file with environment variable overrides.

    Configuration search order (first found is used):
    1. config_path if explicitly provided
    2. ./deployguard.toml (current directory)
    3. ~/.config/deployguard/config.toml (user config directory)

    Args:
        config_path: Explicit path to TOML config file. If None, searches
                    default locations.

    Returns:
        DeployguardConfig: Fully resolved configuration instance.

    Raises:
        FileNotFoundError: If config_path is explicitly provided but doesn't exist.
        ValueError: If TOML file contains invalid configuration.
    """
    toml_data: dict[str, Any] = {}

    if config_path is not None:
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        selected_path = config_path
    else:
        search_paths = [
            Path.cwd() / "deployguard.toml",
            Path.home() / ".config" / "deployguard" / "config.toml",
        ]
        selected_path = None
        for path in search_paths:
            if path.exists():
                selected_path = path
                break

    if selected_path is not None:
        with open(selected_path, "rb") as f:
            toml_data = tomli.load(f)

    # Pydantic overlays environment variables on top of the TOML data
    try:
        return DeployguardConfig(**toml_data)
    except Exception as e:
        if selected_path:
            raise ValueError(
                f"Invalid configuration in {selected_path}: {e}"
            ) from e
        else:
            raise ValueError(f"Invalid configuration: {e}") from e
