from __future__ import annotations

import logging
import os
import re
import shlex
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from command_orchestrator.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


def expand_env_vars(config_str: str) -> str:
    """
    Expand environment variables in the format ${VAR_NAME} within a YAML string.
    Skips expansion in YAML comments (lines starting with #).

    Args:
        config_str: YAML configuration string potentially containing ${VAR_NAME} placeholders

    Returns:
        YAML string with all ${VAR_NAME} placeholders expanded to environment variable values

    Raises:
        KeyError: If a referenced environment variable is not set
    """
    def replace_var(match: re.Match[str]) -> str:
        var_name = match.group(1)
        try:
            return os.environ[var_name]
        except KeyError:
            msg = f"Environment variable '{var_name}' referenced in config.yaml but not set"
            raise KeyError(msg) from None

    lines = []
    for line in config_str.split("\n"):
        if line.lstrip().startswith("#"):
            lines.append(line)
        else:
            lines.append(re.sub(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}", replace_var, line))

    return "\n".join(lines)


def load_config_from_yaml(config_path: str | None = None) -> dict[str, Any]:
    """
    Load YAML configuration file and expand environment variables.

    Args:
        config_path: Path to config.yaml. If None, uses CONFIG_PATH environment variable.
                     Defaults to /app/config.yaml if neither is set.

    Returns:
        Dictionary containing the parsed configuration

    Raises:
        FileNotFoundError: If config file is not found
        ValueError: If the YAML is invalid or a referenced variable is not set
    """
    if config_path is None:
        config_path = os.environ.get("CONFIG_PATH", "/app/config.yaml")

    config_file = Path(config_path)
    if not config_file.exists():
        msg = (
            f"Configuration file not found at {config_path}\n"
            f"Use CONFIG_PATH environment variable to override location."
        )
        raise FileNotFoundError(msg)

    config_str = config_file.read_text()

    try:
        expanded_config = expand_env_vars(config_str)
    except KeyError as e:
        msg = f"Error expanding environment variables in config.yaml: {e}"
        raise ValueError(msg) from None

    try:
        config_dict = yaml.safe_load(expanded_config)
    except yaml.YAMLError as e:
        msg = f"Invalid YAML in config.yaml: {e}"
        raise ValueError(msg) from None

    if config_dict is None:
        return {}
    if not isinstance(config_dict, dict):
        msg = "config.yaml must contain a YAML mapping/dictionary at root level"
        raise ValueError(msg)

    return config_dict


class UserConfig(BaseModel):
    """API user resolved from a bearer token."""

    name: str
    token: str = Field(..., min_length=1)
    role: str = "user"

    @field_validator("role")
    @classmethod
    def validate_role(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in {"none", "user", "admin"}:
            msg = f"Unknown role '{v}' (expected none, user or admin)"
            raise ValueError(msg)
        return v


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=None,
        case_sensitive=False,
    )

    # Storage
    data_path: str = "/data"  # Command records, logs, reports, archives
    workspace_path: str = "/workspace"  # Working trees, one directory per command

    # Git configuration
    git_user_name: str = "batchai"
    git_user_email: str = "batchai@local"
    git_branch: str = "feature/batchai"
    git_timeout_seconds: int = Field(
        default=300,
        description="Timeout for Git and hosting operations (clone, pull, push, fork)",
    )

    # GitHub (hosting) configuration
    github_enabled: bool = False  # When false, the original repository stands in for the fork
    github_token: str | None = None
    github_api_url: str = "https://api.github.com"
    github_timeout_seconds: int = 30

    # Code-modification tool
    tool_executable: list[str] = Field(default_factory=lambda: ["batchai"])
    tool_timeout_seconds: int = Field(
        default=3600,
        description="Timeout for one tool run",
    )

    # Worker pool
    max_concurrent_commands: int = Field(default=2, ge=1)

    # Security
    auth_users: list[UserConfig] = Field(default_factory=list)
    environment: str = "development"

    # Observability
    log_level: str = "INFO"
    log_json: bool = True

    @field_validator("tool_executable", mode="before")
    @classmethod
    def split_executable(cls, v: object) -> object:
        if isinstance(v, str):
            return shlex.split(v)
        return v

    @field_validator("tool_executable")
    @classmethod
    def validate_executable(cls, v: list[str]) -> list[str]:
        if not v:
            msg = "tool.executable must not be empty"
            raise ValueError(msg)
        return v

    def validate_github_config(self) -> None:
        """Validate GitHub configuration consistency (called explicitly after creation)."""
        if self.github_enabled and not self.github_token:
            msg = "github.enabled=true requires github.token to be set in config.yaml"
            raise ValueError(msg)

    @property
    def commands_dir(self) -> Path:
        return Path(self.data_path) / "commands"

    @property
    def logs_dir(self) -> Path:
        return Path(self.data_path) / "logs"

    @property
    def reports_dir(self) -> Path:
        return Path(self.data_path) / "reports"

    @property
    def artifacts_dir(self) -> Path:
        return Path(self.data_path) / "artifacts"

    @property
    def repos_dir(self) -> Path:
        return Path(self.data_path) / "repos"


def _section(config_dict: dict[str, Any], name: str) -> dict[str, Any]:
    value = config_dict.get(name)
    return value if isinstance(value, dict) else {}


def flatten_config(config_dict: dict[str, Any]) -> dict[str, Any]:
    """Flatten nested YAML structure to Settings field format."""
    flat_config: dict[str, Any] = {}

    storage = _section(config_dict, "storage")
    if "data_path" in storage:
        flat_config["data_path"] = storage["data_path"]
    if "workspace_path" in storage:
        flat_config["workspace_path"] = storage["workspace_path"]

    git = _section(config_dict, "git")
    for key in ("user_name", "user_email", "branch", "timeout_seconds"):
        if key in git:
            flat_config[f"git_{key}"] = git[key]

    github = _section(config_dict, "github")
    for key in ("enabled", "token", "api_url", "timeout_seconds"):
        if key in github:
            flat_config[f"github_{key}"] = github[key]

    tool = _section(config_dict, "tool")
    for key in ("executable", "timeout_seconds"):
        if key in tool:
            flat_config[f"tool_{key}"] = tool[key]

    worker = _section(config_dict, "worker")
    if "max_concurrent_commands" in worker:
        flat_config["max_concurrent_commands"] = worker["max_concurrent_commands"]

    auth = _section(config_dict, "auth")
    if "users" in auth:
        flat_config["auth_users"] = auth["users"] or []

    logging_section = _section(config_dict, "logging")
    if "level" in logging_section:
        flat_config["log_level"] = logging_section["level"]
    if "json" in logging_section:
        flat_config["log_json"] = logging_section["json"]

    flat_config["environment"] = config_dict.get("environment", "development")
    return flat_config


def build_settings(config_path: str | None = None) -> Settings:
    """
    Load settings from YAML config file with environment variable expansion.

    Raises:
        ConfigurationError: If the file is missing, malformed or invalid
    """
    try:
        config_dict = load_config_from_yaml(config_path)
        settings_obj = Settings(**flatten_config(config_dict))
        settings_obj.validate_github_config()
    except (FileNotFoundError, OSError, ValueError, ValidationError) as e:
        msg = f"Configuration error: {e}"
        raise ConfigurationError(
            msg,
            context={"config_path": config_path or os.environ.get("CONFIG_PATH", "/app/config.yaml")},
        ) from e
    return settings_obj


_settings: Settings | None = None


def get_settings() -> Settings:
    """Get the process-wide settings, loading them on first use."""
    global _settings
    if _settings is None:
        _settings = build_settings()
        logger.info(
            "Configuration loaded",
            extra={"environment": _settings.environment, "github_enabled": _settings.github_enabled},
        )
    return _settings


def reset_settings_cache() -> None:
    """Forget the loaded settings so the next access reads the file again."""
    global _settings
    _settings = None
