"""Binding options for query consumers."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from duck_query.application.error_handling import RetryPolicy, RetrySetting, RetryStrategy


class QueryOptions(BaseModel):
    """Policies a consumer binds a key with.

    All durations are milliseconds. ``stale_time`` may be ``math.inf`` to keep
    data fresh forever.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    stale_time: float = Field(default=0.0, ge=0, description="Freshness window in ms")
    gc_time: float = Field(default=300_000.0, ge=0, description="Retention once unobserved, ms")
    enabled: bool = Field(default=True, description="Allow automatic refetching of stale data")
    retry: RetrySetting = Field(default=4, description="Retry budget or on/off switch")
    retry_delay: float = Field(default=1000.0, ge=0, description="Delay between retries in ms")
    retry_strategy: RetryStrategy = Field(
        default=RetryStrategy.CONSTANT, description="Retry delay strategy"
    )
    max_retry_delay: float = Field(default=30_000.0, ge=0, description="Retry delay cap in ms")
    initial_value: Any = Field(default=None, description="Value shown until data arrives")
    refetch_on_window_focus: bool = Field(default=True, description="Refetch stale data on focus")
    refetch_on_reconnect: bool = Field(default=True, description="Refetch stale data when online")
    refetch_interval: float = Field(default=0.0, ge=0, description="Polling interval in ms")

    @field_validator("retry")
    @classmethod
    def validate_retry(cls, v: bool | int) -> bool | int:
        """Reject negative retry budgets."""
        if not isinstance(v, bool) and v < 0:
            raise ValueError("retry must be a boolean or a non-negative integer")
        return v

    def retry_policy(self) -> RetryPolicy:
        """Build the retry policy these options describe."""
        return RetryPolicy(
            retry=self.retry,
            retry_delay=self.retry_delay,
            strategy=self.retry_strategy,
            max_retry_delay=self.max_retry_delay,
        )
