"""
Configuration system using Pydantic for type-safe settings management.

This module provides configuration classes for the control plane: where the
state machine and policy definitions live, how runs are stored and how
logging is configured. Every section has working defaults, so an empty
configuration runs against the bundled definitions and a file store
under ``.canonflow/state``.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from canonflow.exceptions import ConfigurationError
from canonflow.models.runs import RetryPolicy


class StateMachineConfig(BaseModel):
    """Location of the state machine definition."""

    spec_dir: str | None = Field(
        default=None, description="Directory with state-machine.yaml, transitions.yaml and status-mapping.yaml"
    )


class PolicyConfig(BaseModel):
    """Automation policy settings."""

    policies_file: str | None = Field(default=None, description="Policy YAML file (bundled defaults if unset)")
    low_risk_envs: list[str] = Field(
        default_factory=lambda: ["staging", "development"],
        description="Environments an unspecified deployment environment may fall back to",
    )


class EngineConfig(BaseModel):
    """Execution engine and run storage settings."""

    store: Literal["memory", "file"] = Field(default="file", description="Run and audit storage backend")
    state_directory: str = Field(default=".canonflow/state", description="Directory for the file store")
    default_timeout_seconds: float = Field(
        default=300.0, gt=0, description="Run timeout for playbooks that do not set one"
    )
    default_retry: RetryPolicy = Field(default_factory=RetryPolicy, description="Retry policy for playbooks without one")


class LoggingConfig(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"


class CanonflowSettings(BaseSettings):
    """Main control plane settings.

    This class combines all configuration sections and provides methods
    for loading from YAML files with environment variable interpolation.
    Environment variables override nothing loaded from YAML but fill any
    section left unset, e.g. ``CANONFLOW_ENGINE__STORE=memory``.
    """

    model_config = SettingsConfigDict(
        env_prefix="CANONFLOW_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    state_machine: StateMachineConfig = Field(default_factory=StateMachineConfig)
    policy: PolicyConfig = Field(default_factory=PolicyConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def state_dir(self) -> Path:
        """Get state directory as Path object."""
        return Path(self.engine.state_directory)

    @classmethod
    def from_yaml(cls, config_path: str) -> CanonflowSettings:
        """Load settings from YAML file with environment variable interpolation.

        Supports ${VAR_NAME} and ${VAR_NAME:-default} substitution.

        Args:
            config_path: Path to YAML configuration file

        Returns:
            CanonflowSettings instance

        Raises:
            ConfigurationError: If config file is invalid or missing required fields
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            yaml_content = config_file.read_text(encoding="utf-8")
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
        except TypeError as e:
            raise ConfigurationError(f"Missing or invalid configuration fields: {e}") from e
        except ValueError as e:
            raise ConfigurationError(f"Failed to validate configuration: {e}") from e

    @staticmethod
    def _interpolate_env_vars(content: str) -> str:
        """Interpolate ${VAR_NAME} placeholders with environment variables.

        Supports two syntaxes:
        - ${VAR_NAME} - Required environment variable (raises if not set)
        - ${VAR_NAME:-default} - Optional with default value

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
            elif default_value is not None:
                return default_value
            else:
                raise ValueError(f"Environment variable {var_name} is not set")

        def process_line(line: str) -> str:
            if line.lstrip().startswith("#"):
                return line
            return pattern.sub(replace_var, line)

        return "\n".join(process_line(line) for line in content.split("\n"))
