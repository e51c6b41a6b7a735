"""Unit tests for the retry policy."""

from __future__ import annotations

import pytest
from duck_query.application.error_handling import (
    RetryPolicy,
    RetryStrategy,
    calculate_retry_delay,
)
from pydantic import ValidationError


class TestRetryPolicy:
    """Test RetryPolicy budget handling."""

    def test_defaults(self) -> None:
        """Test default budget and fixed delay."""
        policy = RetryPolicy()
        assert policy.retry == 4
        assert policy.max_retries == 4
        assert policy.retry_delay == 1000.0
        assert policy.strategy == RetryStrategy.CONSTANT

    def test_integer_budget(self) -> None:
        """Test retries stop once the budget is spent."""
        policy = RetryPolicy(retry=3)
        assert [policy.should_retry(n) for n in range(5)] == [True, True, True, False, False]

    def test_true_is_unbounded(self) -> None:
        """Test retry=True never gives up."""
        policy = RetryPolicy(retry=True)
        assert policy.max_retries is None
        assert policy.should_retry(10_000)

    def test_false_never_retries(self) -> None:
        """Test retry=False disables retries."""
        policy = RetryPolicy(retry=False)
        assert policy.max_retries == 0
        assert not policy.should_retry(0)

    def test_zero_budget(self) -> None:
        """Test retry=0 behaves like False."""
        assert not RetryPolicy(retry=0).should_retry(0)

    def test_negative_budget_rejected(self) -> None:
        """Test negative budgets are invalid."""
        with pytest.raises(ValidationError):
            RetryPolicy(retry=-1)

    def test_textual_budget(self) -> None:
        """Test string budgets are parsed as counts, not switches."""
        assert RetryPolicy(retry="1").max_retries == 1
        assert RetryPolicy(retry="0").max_retries == 0
        assert RetryPolicy(retry="true").max_retries is None
        assert RetryPolicy(retry="false").max_retries == 0
        assert RetryPolicy(retry=True).retry is True
        assert RetryPolicy(retry=1).retry == 1

    def test_negative_delay_rejected(self) -> None:
        """Test negative delays are invalid."""
        with pytest.raises(ValidationError):
            RetryPolicy(retry_delay=-5)


class TestRetryDelay:
    """Test retry delay calculation."""

    def test_constant_delay(self) -> None:
        """Test the default delay is the same for every attempt."""
        policy = RetryPolicy(retry_delay=10)
        assert [calculate_retry_delay(n, policy) for n in (1, 2, 3)] == [10, 10, 10]
        assert policy.delay_for(3) == pytest.approx(0.01)

    def test_linear_delay(self) -> None:
        """Test linear backoff."""
        policy = RetryPolicy(retry_delay=100, strategy=RetryStrategy.LINEAR)
        assert [calculate_retry_delay(n, policy) for n in (1, 2, 3)] == [100, 200, 300]

    def test_exponential_delay_is_capped(self) -> None:
        """Test exponential backoff respects the cap."""
        policy = RetryPolicy(
            retry_delay=1000,
            strategy=RetryStrategy.EXPONENTIAL,
            max_retry_delay=5000,
        )
        delays = [calculate_retry_delay(n, policy) for n in (1, 2, 3, 4, 5)]
        assert delays == [1000, 2000, 4000, 5000, 5000]

    def test_jitter_stays_within_ten_percent(self) -> None:
        """Test jitter never moves the delay more than 10%."""
        policy = RetryPolicy(retry_delay=1000, jitter=True)
        for _ in range(50):
            assert 900 <= calculate_retry_delay(1, policy) <= 1100

    def test_zero_delay(self) -> None:
        """Test a zero delay retries immediately."""
        assert RetryPolicy(retry_delay=0).delay_for(1) == 0.0
