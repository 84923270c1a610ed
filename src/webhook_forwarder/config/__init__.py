"""Configuration management."""

from .settings import (
    Config,
    ConfigReloader,
    ConfigurationError,
    RoutingTable,
    create_default_config,
    load_config,
)

__all__ = [
    "Config",
    "ConfigReloader",
    "ConfigurationError",
    "RoutingTable",
    "load_config",
    "create_default_config",
]
