"""
Configuration system using Pydantic for type-safe settings management.

Every retry, staleness and rate threshold the workflow core consults lives
in ``PolicyConfig`` so that deployments can tune them without code changes.
"""

from __future__ import annotations

import os
import re
from pathlib import Path

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from feature_pilot.exceptions import ConfigurationError


class StorageConfig(BaseModel):
    """Where session documents are persisted."""

    data_directory: str = Field(default="~/.feature-pilot", description="Root directory for session documents")


class AgentConfig(BaseModel):
    """External coding agent invocation settings."""

    command: str = Field(default="claude", description="Agent CLI executable")
    model: str | None = Field(default=None, description="Model passed to the agent CLI, if any")
    timeout_seconds: float = Field(default=900.0, ge=1.0, description="Maximum runtime of one agent invocation")
    assessment_model: str = Field(default="haiku", description="Model used for cheap assessment calls")
    assessment_timeout_seconds: float = Field(
        default=120.0, ge=1.0, description="Maximum runtime of one assessment call"
    )


class PolicyConfig(BaseModel):
    """Workflow policy thresholds."""

    max_step_retries: int = Field(default=2, ge=0, le=10, description="Retries per step after the first attempt")
    max_validation_attempts: int = Field(
        default=3, ge=1, le=20, description="Planning re-spawns before the 2 -> 3 gate proceeds anyway"
    )
    staleness_minutes: float = Field(
        default=5.0, ge=0.0, description="Age after which an in-flight stage is considered interrupted"
    )
    max_calls_per_hour: int = Field(default=100, ge=1, description="Agent invocations allowed per session per hour")
    execution_lock_timeout_minutes: float = Field(
        default=10.0, ge=0.1, description="Age after which a held execution lock is considered stale"
    )
    max_review_iterations: int = Field(default=10, ge=1, description="Planning review passes shown to the agent")


class FeaturePilotSettings(BaseSettings):
    """Main feature-pilot settings.

    Combines all configuration sections and supports loading from YAML with
    environment variable interpolation. Every section has defaults, so
    ``FeaturePilotSettings()`` is a valid configuration.
    """

    model_config = SettingsConfigDict(
        env_prefix="FEATURE_PILOT_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    storage: StorageConfig = Field(default_factory=StorageConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    policy: PolicyConfig = Field(default_factory=PolicyConfig)

    @property
    def data_dir(self) -> Path:
        """Get the data directory as an expanded Path object."""
        return Path(self.storage.data_directory).expanduser()

    @classmethod
    def from_yaml(cls, config_path: str) -> FeaturePilotSettings:
        """Load settings from YAML file with environment variable interpolation.

        Supports ${VAR_NAME} and ${VAR_NAME:-default} substitution.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            FeaturePilotSettings instance

        Raises:
            ConfigurationError: If config file is invalid or missing
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            with open(config_file) as f:
                yaml_content = f.read()
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file: {config_path}") from e

        try:
            yaml_content = cls._interpolate_env_vars(yaml_content)
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment variable reference in config: {e}") from e

        try:
            config_dict = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {config_path}: {e}") from e

        if config_dict is None:
            config_dict = {}
        if not isinstance(config_dict, dict):
            raise ConfigurationError("Configuration must be a YAML object, not a list or scalar")

        try:
            return cls(**config_dict)
        except Exception as e:
            raise ConfigurationError(f"Failed to validate configuration: {e}") from e

    @staticmethod
    def _interpolate_env_vars(content: str) -> str:
        """Interpolate ${VAR_NAME} placeholders with environment variables.

        YAML comment lines are left unchanged.

        Raises:
            ValueError: If a required environment variable is not set
        """
        pattern = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")

        def replace_var(match: re.Match[str]) -> str:
            var_name = match.group(1)
            default_value = match.group(2)
            value = os.getenv(var_name)

            if value is not None:
                return value
            if default_value is not None:
                return default_value
            raise ValueError(f"Environment variable {var_name} is not set")

        def process_line(line: str) -> str:
            if line.lstrip().startswith("#"):
                return line
            return pattern.sub(replace_var, line)

        return "\n".join(process_line(line) for line in content.split("\n"))
