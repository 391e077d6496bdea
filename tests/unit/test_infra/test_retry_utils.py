"""Unit tests for the retry decorator and backoff strategy."""
from __future__ import annotations

import pytest

from changefeed_service.utils.retry import RetryError, RetryStrategy, retry


@pytest.mark.unit
class TestRetryDecorator:
    """Test suite for retry decorator."""

    async def test_retry_succeeds_first_attempt(self):
        """Test that retry decorator doesn't retry on success."""
        call_count = 0

        @retry(max_attempts=3)
        async def successful_func():
            nonlocal call_count
            call_count += 1
            return "success"

        result = await successful_func()
        assert result == "success"
        assert call_count == 1

    async def test_retry_succeeds_after_retries(self):
        """Test that retry decorator retries until success."""
        call_count = 0

        @retry(max_attempts=3, initial_delay=0.001)
        async def eventually_successful():
            nonlocal call_count
            call_count += 1
            if call_count < 3:
                raise ValueError("Not yet")
            return "success"

        result = await eventually_successful()
        assert result == "success"
        assert call_count == 3

    async def test_retry_fails_after_max_attempts(self):
        """Test that retry raises RetryError after max attempts."""
        call_count = 0

        @retry(max_attempts=3, initial_delay=0.001)
        async def always_fails():
            nonlocal call_count
            call_count += 1
            raise ValueError("Always fails")

        with pytest.raises(RetryError) as exc_info:
            await always_fails()

        assert call_count == 3
        assert "after 3 attempts" in str(exc_info.value)
        assert isinstance(exc_info.value.last_exception, ValueError)
        assert exc_info.value.statistics.attempts == 2

    async def test_retry_only_retries_specified_exceptions(self):
        """Test that retry only retries specified exception types."""
        call_count = 0

        @retry(max_attempts=3, initial_delay=0.001, exceptions=(ValueError,))
        async def raises_type_error():
            nonlocal call_count
            call_count += 1
            raise TypeError("Not retryable")

        with pytest.raises(TypeError):
            await raises_type_error()

        assert call_count == 1

    async def test_retry_if_predicate(self):
        """retry_if overrides the exception tuple."""
        call_count = 0

        @retry(max_attempts=3, initial_delay=0.001, retry_if=lambda e: "transient" in str(e))
        async def fails_permanently():
            nonlocal call_count
            call_count += 1
            raise ValueError("permanent")

        with pytest.raises(ValueError):
            await fails_permanently()

        assert call_count == 1


@pytest.mark.unit
class TestRetryStrategy:
    """Test suite for RetryStrategy."""

    def test_exponential_delay_without_jitter(self):
        strategy = RetryStrategy(initial_delay=1.0, max_delay=60.0, jitter=False)

        assert strategy.calculate_delay(0) == 1.0
        assert strategy.calculate_delay(1) == 2.0
        assert strategy.calculate_delay(3) == 8.0

    def test_delay_capped_at_max(self):
        strategy = RetryStrategy(initial_delay=1.0, max_delay=5.0, jitter=False)

        assert strategy.calculate_delay(10) == 5.0

    def test_jitter_stays_in_range(self):
        strategy = RetryStrategy(initial_delay=2.0, jitter=True, jitter_range=(0.5, 1.5))

        for _ in range(50):
            assert 1.0 <= strategy.calculate_delay(0) <= 3.0

    def test_is_exhausted(self):
        strategy = RetryStrategy(max_attempts=3)

        assert not strategy.is_exhausted(2)
        assert strategy.is_exhausted(3)

    def test_zero_attempts_means_unlimited(self):
        strategy = RetryStrategy(max_attempts=0)

        assert not strategy.is_exhausted(10_000)
