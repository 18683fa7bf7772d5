"""
Configuration schema using Pydantic.

Secrets are loaded exclusively from environment variables.
Configuration can be loaded from YAML files or environment variables.
"""

import os
from pathlib import Path
from typing import Optional, List, Dict, Any

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required values."""

    def __init__(self, message: str, field: Optional[str] = None, suggestions: Optional[List[str]] = None):
        self.message = message
        self.field = field
        self.suggestions = suggestions or []
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        lines = [self.message]
        if self.field:
            lines.append(f"  Field: {self.field}")
        if self.suggestions:
            lines.append("  Suggestions:")
            for s in self.suggestions:
                lines.append(f"    - {s}")
        return "\n".join(lines)


class SecretsManager:
    """
    Manages secrets loaded from environment variables only.

    Secrets are never written to config files.
    """

    # Needed only when the Azure DevOps adapters are used
    AZURE_DEVOPS_TOKEN = "AZURE_DEVOPS_TOKEN"

    OPTIONAL_SECRETS = {
        AZURE_DEVOPS_TOKEN: "Personal access token with Build (read & execute) scope",
    }

    @classmethod
    def get_secret(cls, key: str, required: bool = False) -> Optional[str]:
        """
        Get a secret from environment variables.

        Args:
            key: Environment variable name
            required: If True, raise error when missing

        Returns:
            Secret value or None

        Raises:
            ConfigurationError: If required secret is missing
        """
        value = os.environ.get(key)

        if required and not value:
            raise ConfigurationError(
                f"Required secret '{key}' is not set",
                field=key,
                suggestions=[
                    f"Export it before running: export {key}=your-token",
                    "Create the token under User settings > Personal access tokens",
                ],
            )

        return value

    @classmethod
    def get_azure_devops_token(cls, env_key: Optional[str] = None) -> str:
        """Get the Azure DevOps personal access token (required)."""
        return cls.get_secret(env_key or cls.AZURE_DEVOPS_TOKEN, required=True)

    @classmethod
    def get_status(cls) -> Dict[str, str]:
        """Get status of all secrets (masked)."""
        status = {}
        for key in cls.OPTIONAL_SECRETS:
            value = os.environ.get(key)
            if value:
                status[key] = f"{value[:4]}...{value[-4:]}" if len(value) > 8 else "****"
            else:
                status[key] = "not set"
        return status


class ControllerConfig(BaseModel):
    """Retry loop timing and budget."""

    max_retry_count: int = Field(default=8, ge=1, le=100, description="Confirmed retries before giving up")
    iteration_delay_seconds: float = Field(default=60.0, ge=0, le=3600, description="Spacing between status polls")
    timeout_seconds: float = Field(default=5 * 60 * 60, gt=0, le=7 * 24 * 60 * 60, description="Hard ceiling for one run")
    post_action_settle_seconds: float = Field(
        default=30.0, ge=0, le=600,
        description="Max wait for the job to show as active after a confirmed retry",
    )
    confirm_delay_seconds: float = Field(default=1.0, ge=0, le=30, description="Pause between trigger and confirm")
    poll_interval_seconds: float = Field(
        default=1.0, gt=0, le=1.0,
        description="Granularity of every cancellable wait",
    )


class AzureDevOpsConfig(BaseModel):
    """Azure DevOps build adapter configuration."""

    base_url: str = Field(default="https://dev.azure.com")
    organization: Optional[str] = Field(default=None)
    project: Optional[str] = Field(default=None)
    api_version: str = Field(default="7.1")
    request_timeout_seconds: float = Field(default=30.0, ge=1, le=120)
    token_env: str = Field(default=SecretsManager.AZURE_DEVOPS_TOKEN, description="Environment variable for the PAT")


class HostConfig(BaseModel):
    """Host command channel configuration."""

    toggle_hotkey: str = Field(default="ctrl+shift+r")
    hotkey_enabled: bool = Field(default=False)


class StorageConfig(BaseModel):
    """Where journals and metrics are written."""

    base_path: str = Field(default="~/.rerun-agent")
    journal_enabled: bool = Field(default=True)
    metrics_enabled: bool = Field(default=True)


class AgentConfig(BaseModel):
    """Root configuration for rerun-agent."""

    controller: ControllerConfig = Field(default_factory=ControllerConfig)
    azure_devops: AzureDevOpsConfig = Field(default_factory=AzureDevOpsConfig)
    host: HostConfig = Field(default_factory=HostConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)

    @property
    def storage_path(self) -> Path:
        """Get resolved storage path."""
        return Path(self.storage.base_path).expanduser()

    @property
    def runs_path(self) -> Path:
        """Get runs directory path."""
        return self.storage_path / "runs"

    @property
    def journal_path(self) -> Path:
        """Get snapshot journal path."""
        return self.storage_path / "snapshots.jsonl"

    @model_validator(mode="after")
    def validate_consistency(self) -> "AgentConfig":
        """Validate cross-field consistency."""
        ctl = self.controller

        if ctl.iteration_delay_seconds and ctl.poll_interval_seconds > ctl.iteration_delay_seconds:
            raise ValueError(
                f"controller.poll_interval_seconds ({ctl.poll_interval_seconds}) "
                f"must be <= controller.iteration_delay_seconds ({ctl.iteration_delay_seconds})"
            )

        if ctl.confirm_delay_seconds >= ctl.timeout_seconds:
            raise ValueError(
                f"controller.confirm_delay_seconds ({ctl.confirm_delay_seconds}) "
                f"must be < controller.timeout_seconds ({ctl.timeout_seconds})"
            )

        return self

    def validate_for_run(self) -> List[str]:
        """
        Validate configuration is ready for an Azure DevOps run.

        Returns list of warning messages (empty if all good).
        """
        warnings = []

        if not self.azure_devops.organization:
            warnings.append("azure_devops.organization is not set")
        if not self.azure_devops.project:
            warnings.append("azure_devops.project is not set")
        if not os.environ.get(self.azure_devops.token_env):
            warnings.append(f"Secret not set: {self.azure_devops.token_env}")

        if self.storage.journal_enabled or self.storage.metrics_enabled:
            storage = self.storage_path
            try:
                storage.mkdir(parents=True, exist_ok=True)
                test_file = storage / ".write_test"
                test_file.touch()
                test_file.unlink()
            except OSError as e:
                warnings.append(f"Storage path not writable: {storage} ({e})")

        return warnings


def get_default_config_path() -> Path:
    """Get default config file path."""
    return Path.home() / ".rerun-agent" / "config.yaml"


def load_config(config_path: Optional[str] = None) -> AgentConfig:
    """
    Load configuration from YAML file.

    Falls back to defaults if the file doesn't exist.
    Environment variables override config file values.

    Args:
        config_path: Path to config file (optional)

    Returns:
        Loaded configuration

    Raises:
        ConfigurationError: If config file is invalid
    """
    if config_path:
        path = Path(config_path)
        if not path.exists():
            raise ConfigurationError(
                f"Config file not found: {path}",
                suggestions=[
                    f"Create the config file at {path}",
                    "Use 'rerun-agent init' to create a default config",
                    "Or run without --config to use defaults",
                ],
            )
    else:
        path = get_default_config_path()

    data: Dict[str, Any] = {}

    if path.exists():
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            mark = getattr(e, "problem_mark", None)
            raise ConfigurationError(
                f"Invalid YAML in config file: {path}",
                suggestions=[
                    f"Check syntax at line {mark.line + 1 if mark else 'unknown'}",
                    "Use 'rerun-agent init --force' to regenerate a default config",
                ],
            )

    data = _deep_merge(data, _get_env_overrides())

    try:
        config = AgentConfig(**data)
    except ValidationError as e:
        raise ConfigurationError(
            f"Invalid configuration: {e}",
            suggestions=[
                "Check field names and values in your config",
                "Run 'rerun-agent config --validate' to check",
            ],
        )

    return config


def _coerce(value: str) -> Any:
    """Turn numeric-looking env values into numbers."""
    for cast in (int, float):
        try:
            return cast(value)
        except ValueError:
            continue
    return value


def _get_env_overrides() -> Dict[str, Any]:
    """Get configuration overrides from environment variables."""
    overrides: Dict[str, Any] = {}

    env_mappings = {
        "RERUN_MAX_RETRIES": ("controller", "max_retry_count"),
        "RERUN_ITERATION_DELAY": ("controller", "iteration_delay_seconds"),
        "RERUN_TIMEOUT": ("controller", "timeout_seconds"),
        "RERUN_SETTLE_WINDOW": ("controller", "post_action_settle_seconds"),
        "RERUN_STORAGE_PATH": ("storage", "base_path"),
        "RERUN_TOGGLE_HOTKEY": ("host", "toggle_hotkey"),
        "AZURE_DEVOPS_ORG": ("azure_devops", "organization"),
        "AZURE_DEVOPS_PROJECT": ("azure_devops", "project"),
    }

    for env_key, (section, field) in env_mappings.items():
        value = os.environ.get(env_key)
        if value:
            overrides.setdefault(section, {})
            overrides[section][field] = _coerce(value) if section == "controller" else value

    return overrides


def _deep_merge(base: Dict, overlay: Dict) -> Dict:
    """Deep merge two dictionaries."""
    result = base.copy()
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def save_config(config: AgentConfig, config_path: Optional[str] = None) -> Path:
    """Save configuration to YAML file."""
    path = Path(config_path) if config_path else get_default_config_path()

    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        yaml.safe_dump(config.model_dump(), f, default_flow_style=False, sort_keys=False)

    return path
