"""Configuration for the control plane.

Key Components:
    - CanonflowSettings: Main configuration container with YAML loading support
    - StateMachineConfig: Where the lifecycle definition lives
    - PolicyConfig: Policy file and low-risk default environments
    - EngineConfig: Run storage, default timeout and retry

Example:
    >>> from canonflow.config import CanonflowSettings
    >>> settings = CanonflowSettings.from_yaml("canonflow.yaml")
    >>> settings.engine.store
    'file'
"""

from canonflow.config.settings import (
    CanonflowSettings,
    EngineConfig,
    LoggingConfig,
    PolicyConfig,
    StateMachineConfig,
)

__all__ = ["CanonflowSettings", "EngineConfig", "LoggingConfig", "PolicyConfig", "StateMachineConfig"]
