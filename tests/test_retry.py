"""
Unit tests for the retry wrapper.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from shared.errors import InvalidInputError, NetworkError, RetryExhaustedError, RulesErrorCode
from shared.retry import RetryConfig, calculate_delay, default_should_retry, retry_call, retry_on_exception


class TestRetryDelay:
    """Test cases for backoff delay calculation."""

    def test_exponential_backoff_without_jitter(self):
        config = RetryConfig(base_delay=0.1, backoff_multiplier=2.0, max_delay=30.0, jitter_factor=0)

        assert calculate_delay(1, config) == pytest.approx(0.1)
        assert calculate_delay(2, config) == pytest.approx(0.2)
        assert calculate_delay(3, config) == pytest.approx(0.4)

    def test_delay_capped_at_max_delay(self):
        config = RetryConfig(base_delay=1.0, backoff_multiplier=10.0, max_delay=5.0, jitter_factor=0)

        assert calculate_delay(4, config) == pytest.approx(5.0)

    def test_jitter_added_on_top(self):
        config = RetryConfig(base_delay=1.0, backoff_multiplier=2.0, max_delay=30.0, jitter_factor=0.5)

        with patch("shared.retry.random.uniform", return_value=0.25) as uniform:
            delay = calculate_delay(2, config)

        uniform.assert_called_once_with(0, 1.0)
        assert delay == pytest.approx(2.25)


class TestShouldRetry:
    """Test cases for the default retry predicate."""

    def test_retryable_flag_wins(self):
        assert default_should_retry(NetworkError("upstream down"), 1) is True
        assert default_should_retry(InvalidInputError("connection field missing"), 1) is False

    def test_transient_keywords(self):
        assert default_should_retry(Exception("Connection reset by peer"), 1) is True
        assert default_should_retry(Exception("503 Service Unavailable"), 1) is True
        assert default_should_retry(Exception("division by zero"), 1) is False

    def test_builtin_timeouts(self):
        assert default_should_retry(TimeoutError(), 1) is True
        assert default_should_retry(ConnectionError(), 1) is True


class TestRetryCall:
    """Test cases for retry_call."""

    @pytest.fixture
    def fast_config(self):
        return RetryConfig(max_attempts=3, base_delay=0, jitter_factor=0)

    @pytest.mark.asyncio
    async def test_success_first_attempt(self, fast_config):
        operation = AsyncMock(return_value="ok")

        result = await retry_call(operation, fast_config, "op")

        assert result == "ok"
        assert operation.await_count == 1

    @pytest.mark.asyncio
    async def test_transient_failure_then_success(self, fast_config):
        operation = AsyncMock(side_effect=[NetworkError("blip"), NetworkError("blip"), "ok"])

        result = await retry_call(operation, fast_config, "op")

        assert result == "ok"
        assert operation.await_count == 3

    @pytest.mark.asyncio
    async def test_non_retryable_raised_unchanged(self, fast_config):
        error = InvalidInputError("bad selector")
        operation = AsyncMock(side_effect=error)

        with pytest.raises(InvalidInputError) as exc_info:
            await retry_call(operation, fast_config, "op")

        assert exc_info.value is error
        assert operation.await_count == 1

    @pytest.mark.asyncio
    async def test_exhaustion_wraps_last_failure(self, fast_config):
        last = NetworkError("still down")
        operation = AsyncMock(side_effect=[NetworkError("down"), NetworkError("down"), last])

        with pytest.raises(RetryExhaustedError) as exc_info:
            await retry_call(operation, fast_config, "loader.load_one")

        error = exc_info.value
        assert error.attempts == 3
        assert error.operation == "loader.load_one"
        assert error.last_exception is last
        assert error.code == RulesErrorCode.NETWORK_ERROR.value
        assert error.retryable is True

    @pytest.mark.asyncio
    async def test_two_attempts_fail_after_two_invocations(self):
        operation = AsyncMock(side_effect=NetworkError("down"))

        with pytest.raises(RetryExhaustedError) as exc_info:
            await retry_call(operation, RetryConfig(max_attempts=2, base_delay=0, jitter_factor=0), "op")

        assert operation.await_count == 2
        assert exc_info.value.attempts == 2

    @pytest.mark.asyncio
    async def test_custom_predicate(self):
        config = RetryConfig(
            max_attempts=5,
            base_delay=0,
            jitter_factor=0,
            should_retry=lambda error, attempt: attempt < 2
        )
        operation = AsyncMock(side_effect=NetworkError("down"))

        with pytest.raises(NetworkError):
            await retry_call(operation, config, "op")

        assert operation.await_count == 2

    @pytest.mark.asyncio
    async def test_sink_notified_per_retry(self, fast_config):
        sink = MagicMock()
        operation = AsyncMock(side_effect=[NetworkError("blip"), "ok"])

        await retry_call(operation, fast_config, "op", sink=sink)

        sink.on_retry_attempt.assert_called_once()
        kwargs = sink.on_retry_attempt.call_args.kwargs
        assert kwargs["operation"] == "op"
        assert kwargs["attempt"] == 1

    @pytest.mark.asyncio
    async def test_sleeps_between_attempts(self):
        config = RetryConfig(max_attempts=3, base_delay=0.5, backoff_multiplier=2.0, jitter_factor=0)
        operation = AsyncMock(side_effect=[NetworkError("a"), NetworkError("b"), "ok"])

        with patch("shared.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
            await retry_call(operation, config, "op")

        assert [c.args[0] for c in sleep.await_args_list] == [pytest.approx(0.5), pytest.approx(1.0)]

    @pytest.mark.asyncio
    async def test_decorator(self, fast_config):
        calls = []

        @retry_on_exception(fast_config)
        async def flaky(value):
            calls.append(value)
            if len(calls) < 2:
                raise NetworkError("blip")
            return value * 2

        assert await flaky(21) == 42
        assert calls == [21, 21]
