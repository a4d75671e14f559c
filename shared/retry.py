"""
Retry mechanism for resilient operations.
"""

import asyncio
import functools
import random
from dataclasses import dataclass
from typing import Any, Optional, Callable, Awaitable

from shared.errors import RetryExhaustedError
from shared.logging import get_logger
from shared.metrics import notify_sink

TRANSIENT_KEYWORDS = (
    "timeout",
    "network",
    "connection",
    "temporary",
    "rate limit",
    "service unavailable",
    "bad gateway",
    "gateway timeout",
)

ShouldRetry = Callable[[BaseException, int], bool]


def default_should_retry(error: BaseException, attempt: int) -> bool:
    """Retry errors marked retryable, or whose message looks transient."""
    retryable = getattr(error, "retryable", None)
    if isinstance(retryable, bool):
        return retryable

    if isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True

    message = str(error).lower()
    return any(keyword in message for keyword in TRANSIENT_KEYWORDS)


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_attempts: int = 3
    base_delay: float = 0.1
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    jitter_factor: float = 0.1
    should_retry: Optional[ShouldRetry] = None

    @classmethod
    def from_settings(cls, config) -> "RetryConfig":
        return cls(
            max_attempts=config.retry_max_attempts,
            base_delay=config.retry_base_delay,
            max_delay=config.retry_max_delay,
            backoff_multiplier=config.retry_backoff_multiplier,
            jitter_factor=config.retry_jitter_factor,
        )


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Delay before extra attempt ``attempt`` (1-based), jitter added on top."""
    delay = min(
        config.base_delay * (config.backoff_multiplier ** (attempt - 1)),
        config.max_delay
    )
    if config.jitter_factor > 0:
        delay += random.uniform(0, delay * config.jitter_factor)
    return max(0.0, delay)


async def retry_call(operation: Callable[[], Awaitable[Any]],
                     config: Optional[RetryConfig] = None,
                     operation_name: str = "operation",
                     sink: Optional[Any] = None) -> Any:
    """Invoke ``operation`` until it succeeds or retrying stops being worthwhile.

    Non-retryable failures are re-raised unchanged. Exhausting attempts raises
    RetryExhaustedError wrapping the last failure.
    """
    if config is None:
        config = RetryConfig()

    should_retry = config.should_retry or default_should_retry
    logger = get_logger(f"resilience.retry.{operation_name}")
    last_exception: Optional[BaseException] = None

    for attempt in range(1, config.max_attempts + 1):
        try:
            result = await operation()

            if attempt > 1:
                logger.info("Retry succeeded", attempt=attempt, operation=operation_name)

            return result

        except Exception as e:
            last_exception = e

            if not should_retry(e, attempt):
                raise

            if attempt == config.max_attempts:
                break

            delay = calculate_delay(attempt, config)

            logger.warning(
                "Retry attempt failed, waiting before next attempt",
                attempt=attempt,
                max_attempts=config.max_attempts,
                delay=round(delay, 4),
                operation=operation_name,
                error=str(e)
            )
            notify_sink(
                sink,
                "on_retry_attempt",
                operation=operation_name,
                attempt=attempt,
                delay=delay,
                error=e
            )

            await asyncio.sleep(delay)

    logger.error(
        "All retry attempts exhausted",
        max_attempts=config.max_attempts,
        operation=operation_name,
        error=str(last_exception)
    )
    raise RetryExhaustedError(operation_name, last_exception, config.max_attempts)


def retry_on_exception(config: Optional[RetryConfig] = None,
                       operation_name: Optional[str] = None) -> Callable:
    """Decorator for retrying async functions."""

    def decorator(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        name = operation_name or func.__name__

        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            return await retry_call(lambda: func(*args, **kwargs), config, name)

        return wrapper

    return decorator
