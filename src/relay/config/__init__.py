"""Configuration models and parser for relay.yaml."""

from relay.config.models import (
    CLIConfig,
    PingConfig,
    RelayConfig,
    RetryConfig,
    SessionsConfig,
)
from relay.config.parser import ConfigError, load_config

__all__ = [
    "CLIConfig",
    "ConfigError",
    "PingConfig",
    "RelayConfig",
    "RetryConfig",
    "SessionsConfig",
    "load_config",
]
