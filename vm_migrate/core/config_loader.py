"""Configuration management for vm-migrate."""

import os
import re
from pathlib import Path
from typing import Any, Literal

import structlog
import yaml
from dotenv import load_dotenv
from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError

logger = structlog.get_logger()

DEFAULT_CONFIG_PATH = Path("/opt/custom/etc/vm-migrate.yml")
USER_CONFIG_PATH = Path.home() / ".config" / "vm-migrate" / "config.yml"


class MigrationConfig(BaseSettings):
    """Settings shared by every vm-migrate subcommand."""

    mode: Literal["headnode", "cn"] = Field(default="headnode", alias="VM_MIGRATE_MODE")
    state_dir: str = Field(default="/opt", alias="VM_MIGRATE_STATE_DIR")
    identity_file: str = Field(default="/root/.ssh/sdc.id_rsa", alias="VM_MIGRATE_IDENTITY_FILE")
    ssh_user: str = Field(default="root", alias="VM_MIGRATE_SSH_USER")
    ssh_port: int = Field(default=22, alias="VM_MIGRATE_SSH_PORT")
    transfer_cipher: str = Field(
        default="aes128-gcm@openssh.com", alias="VM_MIGRATE_TRANSFER_CIPHER"
    )
    zpool: str = Field(default="zones", alias="VM_MIGRATE_ZPOOL")
    image_snapshot: str = Field(default="final", alias="VM_MIGRATE_IMAGE_SNAPSHOT")
    snapshot_name: str = Field(default="migration", alias="VM_MIGRATE_SNAPSHOT_NAME")
    overlay_nic_tag: str = Field(default="sdc_underlay", alias="VM_MIGRATE_OVERLAY_NIC_TAG")
    restart_vm_agent: bool = Field(default=True, alias="VM_MIGRATE_RESTART_VM_AGENT")
    preserve_quota: bool = Field(default=True, alias="VM_MIGRATE_PRESERVE_QUOTA")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_dir: str = Field(default="/var/log/vm-migrate", alias="VM_MIGRATE_LOG_DIR")
    config_file: str | None = Field(default=None, alias="VM_MIGRATE_CONFIG")

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", populate_by_name=True
    )


def load_config(config_path: str | None = None) -> MigrationConfig:
    """Load configuration from defaults, YAML files and the environment.

    Args:
        config_path: Optional path to a YAML config file

    Returns:
        Loaded configuration

    Raises:
        ConfigurationError: If a file cannot be parsed or a value is invalid
    """
    load_dotenv()

    values: dict[str, Any] = {}
    values.update(_load_yaml_config(USER_CONFIG_PATH))

    project_path = Path(config_path or os.getenv("VM_MIGRATE_CONFIG", str(DEFAULT_CONFIG_PATH)))
    if config_path and not project_path.exists():
        raise ConfigurationError(f"Config file not found: {project_path}")
    values.update(_load_yaml_config(project_path))

    # Environment variables win over YAML; BaseSettings prefers init kwargs,
    # so drop YAML keys the environment already sets.
    for name, field in MigrationConfig.model_fields.items():
        if field.alias and os.getenv(field.alias) is not None:
            values.pop(name, None)

    try:
        config = MigrationConfig(**values)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e

    if project_path.exists():
        config.config_file = str(project_path)

    logger.debug("Configuration loaded", mode=config.mode, config_file=config.config_file)
    return config


def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """Load a YAML configuration file, returning only known keys."""
    if not config_path.exists():
        return {}

    try:
        content = _expand_yaml_config(config_path.read_text(encoding="utf-8"))
        loaded = yaml.safe_load(content)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Failed to load config from {config_path}: {e}") from e

    # yaml.safe_load can return None, str, list, etc.
    if not isinstance(loaded, dict):
        return {}

    known = set(MigrationConfig.model_fields)
    unknown = sorted(set(loaded) - known)
    if unknown:
        logger.warning("Ignoring unknown config keys", path=str(config_path), keys=unknown)
    return {key: value for key, value in loaded.items() if key in known}


def _expand_yaml_config(content: str) -> str:
    """Expand ${VAR} references, restricted to an allowlist."""
    allowed_env_vars = {"HOME", "USER", "VM_MIGRATE_STATE_DIR", "VM_MIGRATE_LOG_DIR"}

    def replace_var(match):
        var_name = match.group(1)
        if var_name in allowed_env_vars:
            return os.getenv(var_name, match.group(0))
        logger.warning("Environment variable not in allowlist, skipping expansion", variable=var_name)
        return match.group(0)

    return re.sub(r"\$\{([^}]+)\}", replace_var, content)
