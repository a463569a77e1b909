"""
Unit tests for retry utilities.

Tests cover:
- RetryConfig validation
- Backoff calculation
- Retry policies
- retry_async with retryable and non-retryable errors
"""

import pytest

from tiervault.exceptions import PermanentActionError, TransientActionError
from tiervault.retry import (
    BackoffRetryPolicy,
    NoRetryPolicy,
    RetryConfig,
    RetryError,
    RetryPolicy,
    calculate_backoff,
    retry_async,
)

FAST = RetryConfig(max_retries=2, initial_delay=0.001, max_delay=0.01)


class TestRetryConfig:
    """Tests for RetryConfig validation."""

    def test_defaults(self):
        """Test defaults give three attempts with a 2s initial delay."""
        config = RetryConfig()

        assert config.max_retries == 2
        assert config.max_attempts == 3
        assert config.initial_delay == 2.0
        assert config.jitter == 0.0

    @pytest.mark.parametrize(
        ("kwargs", "message"),
        [
            ({"max_retries": -1}, "max_retries must be >= 0"),
            ({"initial_delay": 0}, "initial_delay must be positive"),
            ({"max_delay": 0}, "max_delay must be positive"),
            ({"initial_delay": 10.0, "max_delay": 5.0}, "must be >= initial_delay"),
            ({"exponential_base": 1.0}, "exponential_base must be > 1.0"),
            ({"jitter": 1.5}, "jitter must be between 0.0 and 1.0"),
        ],
    )
    def test_invalid_values(self, kwargs, message):
        """Test invalid values are rejected with a clear message."""
        with pytest.raises(ValueError, match=message):
            RetryConfig(**kwargs)


class TestCalculateBackoff:
    """Tests for calculate_backoff."""

    def test_exponential_growth(self):
        """Test delays double per attempt."""
        config = RetryConfig(initial_delay=2.0)

        assert calculate_backoff(0, config) == 2.0
        assert calculate_backoff(1, config) == 4.0
        assert calculate_backoff(2, config) == 8.0

    def test_capped_at_max_delay(self):
        """Test delay never exceeds max_delay."""
        config = RetryConfig(initial_delay=2.0, max_delay=5.0)

        assert calculate_backoff(10, config) == 5.0

    def test_jitter_stays_in_range(self):
        """Test jitter stays within the configured fraction."""
        config = RetryConfig(initial_delay=10.0, max_delay=10.0, jitter=0.1)

        for _ in range(50):
            assert 9.0 <= calculate_backoff(0, config) <= 11.0


class TestRetryPolicies:
    """Tests for the retry policy implementations."""

    def test_protocol_conformance(self):
        """Test all policies satisfy RetryPolicy."""
        assert isinstance(BackoffRetryPolicy(), RetryPolicy)
        assert isinstance(NoRetryPolicy(), RetryPolicy)

    def test_attempt_limit(self):
        """Test retries stop at max_retries."""
        policy = BackoffRetryPolicy(RetryConfig(max_retries=2), retry_on=(Exception,))

        assert policy.should_retry(0, ValueError())
        assert policy.should_retry(1, ValueError())
        assert not policy.should_retry(2, ValueError())

    def test_transient_only_by_default(self):
        """Test only transient errors are retried by default."""
        policy = BackoffRetryPolicy()

        assert policy.should_retry(0, TransientActionError("c1", "lock timeout"))
        assert policy.should_retry(0, ConnectionResetError())
        assert policy.should_retry(0, TimeoutError())
        assert not policy.should_retry(0, PermanentActionError("c1", "bad reference"))
        assert not policy.should_retry(0, ValueError("invalid"))

    def test_backoff_follows_config(self):
        """Test the policy delays follow its schedule."""
        policy = BackoffRetryPolicy(RetryConfig(initial_delay=1.0))

        assert [policy.get_backoff(n) for n in range(3)] == [1.0, 2.0, 4.0]
        assert "TransientActionError" in repr(policy)

    def test_no_retry_policy(self):
        """Test NoRetryPolicy never retries."""
        policy = NoRetryPolicy()

        assert policy.max_retries == 0
        assert not policy.should_retry(0, TimeoutError())


class TestRetryAsync:
    """Tests for retry_async."""

    async def test_success_first_attempt(self):
        """Test a successful operation runs once."""
        calls = []

        async def operation():
            calls.append(1)
            return "ok"

        assert await retry_async(operation, FAST) == "ok"
        assert len(calls) == 1

    async def test_succeeds_after_transient_failures(self):
        """Test transient failures are retried until success."""
        calls = []

        async def operation():
            calls.append(1)
            if len(calls) < 3:
                raise ConnectionError("refused")
            return 42

        assert await retry_async(operation, FAST, operation_name="collect") == 42
        assert len(calls) == 3

    async def test_exhausted_raises_retry_error(self):
        """Test RetryError carries attempts and last error."""

        async def operation():
            raise TimeoutError("statement timeout")

        with pytest.raises(RetryError) as exc_info:
            await retry_async(operation, FAST)

        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.last_error, TimeoutError)
        assert str(exc_info.value) == "operation failed after 3 attempt(s): statement timeout"

    async def test_non_retryable_raised_immediately(self):
        """Test non-retryable errors propagate on the first attempt."""
        calls = []

        async def operation():
            calls.append(1)
            raise ValueError("bad input")

        with pytest.raises(ValueError):
            await retry_async(operation, FAST)

        assert len(calls) == 1

