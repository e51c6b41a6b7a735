"""Configuration package for duck-query."""

from .config import (
    QueryClientConfig,
    QueryDefaultsConfig,
    configure_logging,
    get_config,
    reload_config,
)

__all__ = [
    "QueryClientConfig",
    "QueryDefaultsConfig",
    "configure_logging",
    "get_config",
    "reload_config",
]
