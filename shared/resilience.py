"""
Resilience service: retry, circuit breaking and rate limiting composed
around arbitrary async operations keyed by an operation name.
"""

import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from shared.circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry
from shared.logging import get_logger
from shared.metrics import notify_sink
from shared.rate_limiter import RateLimiterConfig, SlidingWindowRateLimiter
from shared.retry import RetryConfig, retry_call

Operation = Callable[[], Awaitable[Any]]


@dataclass
class ResilienceOptions:
    """Layers to apply. A ``None`` layer is skipped."""
    retry: Optional[RetryConfig] = None
    circuit_breaker: Optional[CircuitBreakerConfig] = None
    rate_limit: Optional[RateLimiterConfig] = None


class ResilienceService:
    """Owns one circuit breaker registry and one rate limiter.

    ``with_resilience`` applies rate limiting first, then the circuit breaker,
    then retry: the limiter gates entry, the breaker gates each attempt and
    retry repeats inside it.
    """

    def __init__(self,
                 retry_config: Optional[RetryConfig] = None,
                 circuit_config: Optional[CircuitBreakerConfig] = None,
                 rate_limit_config: Optional[RateLimiterConfig] = None,
                 sink: Optional[Any] = None,
                 clock: Callable[[], float] = time.time):
        self.logger = get_logger("resilience.service")
        self.sink = sink
        self.default_options = ResilienceOptions(
            retry=retry_config or RetryConfig(),
            circuit_breaker=circuit_config or CircuitBreakerConfig(),
            rate_limit=rate_limit_config or RateLimiterConfig(),
        )
        self.circuit_breakers = CircuitBreakerRegistry(
            default_config=self.default_options.circuit_breaker,
            clock=clock,
            on_state_change=self._on_circuit_state_change
        )
        self.rate_limiter = SlidingWindowRateLimiter(
            default_config=self.default_options.rate_limit,
            on_reject=self._on_rate_limit_reject
        )

    @classmethod
    def from_settings(cls, config, sink: Optional[Any] = None) -> "ResilienceService":
        return cls(
            retry_config=RetryConfig.from_settings(config),
            circuit_config=CircuitBreakerConfig.from_settings(config),
            rate_limit_config=RateLimiterConfig.from_settings(config),
            sink=sink,
        )

    def _on_circuit_state_change(self, operation: str, from_state: str, to_state: str):
        notify_sink(
            self.sink,
            "on_circuit_state_change",
            operation=operation,
            from_state=from_state,
            to_state=to_state
        )

    def _on_rate_limit_reject(self, operation: str):
        notify_sink(self.sink, "record_rate_limit_rejection", operation=operation)

    async def with_retry(self, operation: Operation, name: str,
                         config: Optional[RetryConfig] = None) -> Any:
        return await retry_call(
            operation,
            config or self.default_options.retry,
            operation_name=name,
            sink=self.sink
        )

    async def with_circuit_breaker(self, operation: Operation, name: str,
                                   config: Optional[CircuitBreakerConfig] = None) -> Any:
        breaker = self.circuit_breakers.get_or_create(name, config)
        return await breaker.call(operation)

    async def with_rate_limit(self, operation: Operation, name: str,
                              config: Optional[RateLimiterConfig] = None) -> Any:
        async with self.rate_limiter.slot(name, config):
            return await operation()

    async def with_resilience(self, operation: Operation, name: str,
                              options: Optional[ResilienceOptions] = None) -> Any:
        """Apply the configured layers around ``operation``."""
        options = options or self.default_options
        call = operation

        if options.retry is not None:
            inner = call
            call = lambda: self.with_retry(inner, name, options.retry)  # noqa: E731

        if options.circuit_breaker is not None:
            guarded = call
            call = lambda: self.with_circuit_breaker(guarded, name, options.circuit_breaker)  # noqa: E731

        if options.rate_limit is not None:
            limited = call
            call = lambda: self.with_rate_limit(limited, name, options.rate_limit)  # noqa: E731

        return await call()

    def get_stats(self, name: str) -> Optional[Dict[str, Any]]:
        return self.circuit_breakers.get_stats(name)

    def get_all_stats(self) -> Dict[str, Dict[str, Any]]:
        return self.circuit_breakers.get_all_stats()

    def reset(self, name: Optional[str] = None) -> bool:
        """Reset a circuit breaker (all when ``name`` is None) and its window."""
        self.rate_limiter.reset(name)
        found = self.circuit_breakers.reset(name)
        self.logger.info("Resilience state reset", operation=name or "*", found=found)
        return found
