"""Retry policy for failed producer calls.

A key that fails is retried by the fetch orchestrator, which asks the key's
``RetryPolicy`` whether another attempt is allowed and how long to wait. The
default is a fixed delay per attempt; linear and exponential backoff are
available for producers that need them.
"""

from __future__ import annotations

import random
from enum import Enum

from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, Field, field_validator

from duck_query.infrastructure.logging import get_logger

logger = get_logger(__name__)


class RetryStrategy(str, Enum):
    """Retry delay strategies."""

    CONSTANT = "constant"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


def parse_retry(value: Any) -> Any:
    """Coerce a textual retry setting before union validation.

    Environment values arrive as strings, and ``"1"`` would otherwise validate
    as ``True``. Digit strings become budgets, ``"true"``/``"false"`` become
    switches and anything else is left to the field validation.
    """
    if not isinstance(value, str):
        return value
    text = value.strip()
    if text.isdigit():
        return int(text)
    if text.lower() in ("true", "false"):
        return text.lower() == "true"
    return value


RetrySetting = Annotated[bool | int, BeforeValidator(parse_retry)]


class RetryPolicy(BaseModel):
    """Retry behavior of one query key.

    ``retry`` is either a boolean (``True`` retries forever, ``False`` never)
    or the maximum number of automatic retries. Delays are in milliseconds.
    """

    retry: RetrySetting = Field(default=4, description="Retry budget or on/off switch")
    retry_delay: float = Field(default=1000.0, ge=0, description="Base retry delay in ms")
    strategy: RetryStrategy = Field(default=RetryStrategy.CONSTANT, description="Delay strategy")
    max_retry_delay: float = Field(default=30_000.0, ge=0, description="Delay cap in ms")
    jitter: bool = Field(default=False, description="Add +/-10% jitter to delays")

    @field_validator("retry")
    @classmethod
    def validate_retry(cls, v: bool | int) -> bool | int:
        """Reject negative retry budgets."""
        if not isinstance(v, bool) and v < 0:
            raise ValueError("retry must be a boolean or a non-negative integer")
        return v

    @property
    def max_retries(self) -> int | None:
        """Retry budget, None when unbounded."""
        if self.retry is True:
            return None
        if self.retry is False:
            return 0
        return self.retry

    def should_retry(self, retry_count: int) -> bool:
        """Check if another automatic retry is allowed.

        Args:
            retry_count: Retries already performed since the last success
        """
        budget = self.max_retries
        return budget is None or retry_count < budget

    def delay_for(self, attempt: int) -> float:
        """Delay in seconds before the given retry attempt (1-based)."""
        return calculate_retry_delay(attempt, self) / 1000


def calculate_retry_delay(attempt: int, policy: RetryPolicy) -> float:
    """Calculate the delay in milliseconds before a retry attempt."""
    if policy.strategy == RetryStrategy.CONSTANT:
        delay = policy.retry_delay
    elif policy.strategy == RetryStrategy.LINEAR:
        delay = policy.retry_delay * attempt
    else:  # EXPONENTIAL
        delay = policy.retry_delay * (2 ** (attempt - 1))

    delay = min(delay, policy.max_retry_delay)

    if policy.jitter:
        jitter_range = delay * 0.1
        delay += random.uniform(-jitter_range, jitter_range)

    return max(0.0, delay)
