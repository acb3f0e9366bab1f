"""Configuration loading for clone-backup environments."""

from .settings import (
    CONFIG_PATH,
    EnvironmentConfig,
    RetryPolicy,
    Timeouts,
    load_environment,
    load_environments,
    parse_environments,
)

__all__ = [
    "CONFIG_PATH",
    "EnvironmentConfig",
    "RetryPolicy",
    "Timeouts",
    "load_environment",
    "load_environments",
    "parse_environments",
]
