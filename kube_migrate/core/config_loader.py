"""Configuration management for kube-migrate."""

import asyncio
import os
import re
from pathlib import Path
from typing import Any

import structlog
import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings

from .exceptions import ConfigurationError
from .settings import TimeoutSettings

logger = structlog.get_logger()


class KubectlConfig(BaseModel):
    """How to reach the cluster control plane."""

    binary: str = "kubectl"
    context: str | None = None
    kubeconfig: str | None = None


class LegacyTopologyConfig(BaseModel):
    """Single-replica Deployment with a manually bound volume."""

    deployment: str = "mongodb-deployment"
    claim: str = "mongodb-pvc"
    volume: str | None = "mongodb-pv"
    pod_selector: str | None = None  # Derived from the Deployment selector when unset


class ManagedTopologyConfig(BaseModel):
    """StatefulSet whose replicas own their volumes."""

    statefulset: str = "mongodb"
    headless_service: str = "mongodb-headless"
    service: str = "mongodb-service"
    image: str = "mongo:7.0"
    container: str = "mongodb"
    replicas: int = 1
    storage_size: str = "1Gi"
    storage_class: str | None = None
    claim_template: str = "mongodb-storage"
    manifest_path: str | None = None  # Apply this file instead of the built-in manifests
    labels: dict[str, str] = Field(default_factory=lambda: {"app": "mongodb"})


class DatabaseConfig(BaseModel):
    """Administrative data channel settings.

    Credentials stay inside the cluster: the managed StatefulSet reads them from
    ``credentials_secret`` and admin commands expand the container variables
    named by ``username_env`` / ``password_env``.
    """

    port: int = 27017
    auth_database: str = "admin"
    database: str = "chatapp"
    credentials_secret: str = "mongodb-credentials"
    username_key: str = "username"
    password_key: str = "password"
    username_env: str = "MONGO_INITDB_ROOT_USERNAME"
    password_env: str = "MONGO_INITDB_ROOT_PASSWORD"
    shell: str = "mongosh"


class MigrationConfig(BaseSettings):
    """Main configuration for kube-migrate."""

    namespace: str = Field(default="chat-app", alias="KUBE_MIGRATE_NAMESPACE")
    kubectl: KubectlConfig = Field(default_factory=KubectlConfig)
    legacy: LegacyTopologyConfig = Field(default_factory=LegacyTopologyConfig)
    managed: ManagedTopologyConfig = Field(default_factory=ManagedTopologyConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    timeouts: TimeoutSettings = Field(default_factory=TimeoutSettings)
    backup_dir: str = Field(default="backups", alias="KUBE_MIGRATE_BACKUP_DIR")
    keep_backup: bool = False
    require_backup: bool = False
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    config_file: str = Field(default="config/kube-migrate.yml", alias="KUBE_MIGRATE_CONFIG")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
        "populate_by_name": True,
    }


def load_config(config_path: str | None = None) -> MigrationConfig:
    """Load configuration from multiple sources (synchronous interface).

    Args:
        config_path: Optional path to YAML config file

    Returns:
        Loaded configuration
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(load_config_async(config_path))
    raise RuntimeError(
        "load_config() cannot be called from within an async context. "
        "Use 'await load_config_async()' instead."
    )


async def load_config_async(config_path: str | None = None) -> MigrationConfig:
    """Load configuration from multiple sources (async interface).

    Precedence, lowest first: defaults, user config, project config,
    environment variables.
    """
    load_dotenv()

    config = MigrationConfig()

    user_config_path = Path.home() / ".config" / "kube-migrate" / "config.yml"
    config = await _load_config_file(config, user_config_path)

    default_config_file = os.getenv("KUBE_MIGRATE_CONFIG", config.config_file)
    project_config_path = Path(config_path or default_config_file)
    if config_path and not project_config_path.exists():
        raise ConfigurationError(f"Config file not found: {project_config_path}")
    config = await _load_config_file(config, project_config_path)

    config.config_file = str(project_config_path)

    _apply_env_overrides(config)

    return config


async def _load_config_file(config: MigrationConfig, config_path: Path) -> MigrationConfig:
    """Merge a YAML file into the configuration, returning a new instance."""
    if not config_path.exists():
        return config

    yaml_config = await _load_yaml_config(config_path)
    if not yaml_config:
        return config

    merged = config.model_dump()
    _merge_config(merged, yaml_config)
    try:
        updated = MigrationConfig.model_validate(merged)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration in {config_path}: {e}") from e

    logger.debug("Configuration file applied", path=str(config_path))
    return updated


def _apply_env_overrides(config: MigrationConfig) -> None:
    """Apply environment variable overrides."""
    if namespace := os.getenv("KUBE_MIGRATE_NAMESPACE"):
        config.namespace = namespace
    if context := os.getenv("KUBE_MIGRATE_CONTEXT"):
        config.kubectl.context = context
    if kubeconfig := os.getenv("KUBECONFIG"):
        config.kubectl.kubeconfig = kubeconfig
    if backup_dir := os.getenv("KUBE_MIGRATE_BACKUP_DIR"):
        config.backup_dir = backup_dir
    if os.getenv("LOG_LEVEL"):
        config.log_level = os.getenv("LOG_LEVEL", config.log_level)


async def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """Load YAML configuration file."""
    try:
        content = await asyncio.to_thread(config_path.read_text)

        content = _expand_yaml_config(content)

        loaded = yaml.safe_load(content)
        if not isinstance(loaded, dict):
            return {}
        return loaded
    except Exception as e:
        raise ConfigurationError(f"Failed to load config from {config_path}: {e}") from e


def _expand_yaml_config(content: str) -> str:
    """Expand ${VAR} references against an allowlist of environment variables."""

    allowed_env_vars = {
        "HOME",
        "USER",
        "XDG_CONFIG_HOME",
        "KUBECONFIG",
        "KUBE_MIGRATE_NAMESPACE",
        "KUBE_MIGRATE_CONTEXT",
        "KUBE_MIGRATE_BACKUP_DIR",
        "LOG_LEVEL",
    }

    def replace_var(match):
        var_name = match.group(1)
        if var_name in allowed_env_vars:
            return os.getenv(var_name, match.group(0))
        logger.warning(
            "Environment variable not in allowlist, skipping expansion", variable=var_name
        )
        return match.group(0)

    return re.sub(r"\$\{([^}]+)\}", replace_var, content)


def _merge_config(base: dict[str, Any], update: dict[str, Any]) -> None:
    """Merge configuration dictionaries with deep merging."""
    for key, value in update.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _merge_config(base[key], value)
        else:
            base[key] = value
