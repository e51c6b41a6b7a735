"""Centralized configuration for duck-query.

This module provides a centralized configuration system that supports:
- Environment variable overrides
- Default values with validation
- Type safety using Pydantic
- Hierarchical configuration structure

Durations are milliseconds, matching the binding options they default.
"""

from __future__ import annotations

import logging
from functools import lru_cache

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from duck_query.application.error_handling import RetrySetting, RetryStrategy
from duck_query.infrastructure.logging import LoggingConfig, LogLevel, setup_logging


class QueryDefaultsConfig(BaseModel):
    """Defaults applied to bindings that do not override them."""

    stale_time: float = Field(
        default=0.0, ge=0, description="Milliseconds before cached data is considered stale"
    )

    gc_time: float = Field(
        default=300_000.0, ge=0, description="Milliseconds an unobserved entry is retained"
    )

    retry: RetrySetting = Field(default=4, description="Retry budget or on/off switch")

    retry_delay: float = Field(
        default=1000.0, ge=0, le=600_000, description="Delay between retries in milliseconds"
    )

    retry_strategy: RetryStrategy = Field(
        default=RetryStrategy.CONSTANT, description="Retry delay strategy"
    )

    max_retry_delay: float = Field(
        default=30_000.0, ge=0, le=3_600_000, description="Upper bound for retry delays in ms"
    )

    refetch_on_window_focus: bool = Field(
        default=True, description="Refetch stale queries when the application becomes visible"
    )

    refetch_on_reconnect: bool = Field(
        default=True, description="Refetch stale queries when the network comes back"
    )

    refetch_interval: float = Field(
        default=0.0, ge=0, description="Polling interval in milliseconds, 0 disables polling"
    )

    @field_validator("retry")
    @classmethod
    def validate_retry(cls, v: bool | int) -> bool | int:
        """Reject negative retry budgets."""
        if not isinstance(v, bool) and v < 0:
            raise ValueError("retry must be a boolean or a non-negative integer")
        return v


class LoggingSettings(BaseModel):
    """Logging configuration."""

    level: LogLevel = Field(default=LogLevel.INFO, description="Package log level")

    json_format: bool = Field(default=False, description="Emit JSON log lines")


class MetricsSettings(BaseModel):
    """Metrics configuration."""

    enabled: bool = Field(default=True, description="Collect Prometheus metrics")

    namespace: str = Field(
        default="duck_query", min_length=1, description="Prometheus metric name prefix"
    )


class QueryClientConfig(BaseSettings):
    """Main query client configuration.

    All configuration values can be overridden using environment variables
    with the prefix DUCK_QUERY_ (e.g., DUCK_QUERY_DEFAULTS__STALE_TIME).
    """

    model_config = SettingsConfigDict(
        env_prefix="DUCK_QUERY_",
        env_nested_delimiter="__",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    defaults: QueryDefaultsConfig = Field(default_factory=QueryDefaultsConfig)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    metrics: MetricsSettings = Field(default_factory=MetricsSettings)

    client_name: str = Field(
        default="default", min_length=1, description="Name used in logs and metric labels"
    )


@lru_cache(maxsize=1)
def get_config() -> QueryClientConfig:
    """Get the singleton configuration instance.

    Returns:
        QueryClientConfig: The configuration instance
    """
    return QueryClientConfig()


def reload_config() -> QueryClientConfig:
    """Reload configuration from environment.

    Returns:
        QueryClientConfig: The new configuration instance
    """
    get_config.cache_clear()
    return get_config()


def configure_logging(config: QueryClientConfig | None = None) -> logging.Logger:
    """Apply the logging section of a configuration to the package logger.

    The engine never calls this itself; applications and the CLI do, so a host
    that manages logging on its own keeps full control.

    Args:
        config: Configuration to apply, defaults to ``get_config()``

    Returns:
        The configured package logger
    """
    settings = (config or get_config()).logging
    return setup_logging(LoggingConfig(level=settings.level, json_format=settings.json_format))
