"""
Circuit breaker pattern implementation for resilient service calls.
"""

import time
import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Any, Optional, Callable, Awaitable

from shared.errors import CircuitOpenError, RuleTimeoutError
from shared.logging import get_logger

StateChangeCallback = Callable[[str, str, str], None]


class CircuitBreakerState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Failing, requests blocked
    HALF_OPEN = "half_open"  # Testing if service recovered


@dataclass
class CircuitBreakerConfig:
    """Thresholds for one circuit breaker."""
    failure_threshold: int = 5
    reset_timeout: float = 60.0
    success_threshold: int = 3
    request_timeout: float = 30.0

    @classmethod
    def from_settings(cls, config) -> "CircuitBreakerConfig":
        return cls(
            failure_threshold=config.circuit_failure_threshold,
            reset_timeout=config.circuit_reset_timeout,
            success_threshold=config.circuit_success_threshold,
            request_timeout=config.circuit_request_timeout,
        )


class CircuitBreaker:
    """Per-operation circuit breaker.

    Closed calls pass through and count consecutive failures; reaching the
    failure threshold opens the circuit. An open circuit rejects calls until
    ``reset_timeout`` has elapsed since the last failure, then lets the next
    call through half-open. Half-open successes close the circuit once the
    success threshold is met; any half-open failure reopens it. Each call is
    bounded by ``request_timeout`` and a timeout counts as a failure.
    """

    def __init__(self,
                 name: str,
                 config: Optional[CircuitBreakerConfig] = None,
                 clock: Callable[[], float] = time.time,
                 on_state_change: Optional[StateChangeCallback] = None):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self.clock = clock
        self.on_state_change = on_state_change
        self.logger = get_logger(f"resilience.circuit_breaker.{name}")

        self._state = CircuitBreakerState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._total_requests = 0
        self._total_failures = 0
        self._total_successes = 0
        self._last_failure_time: Optional[float] = None
        self._last_success_time: Optional[float] = None

    @property
    def state(self) -> CircuitBreakerState:
        return self._state

    def _can_attempt_reset(self) -> bool:
        """Check if enough time has passed to attempt a reset."""
        if self._last_failure_time is None:
            return True
        return (self.clock() - self._last_failure_time) >= self.config.reset_timeout

    def _transition(self, new_state: CircuitBreakerState):
        old_state = self._state
        if old_state == new_state:
            return
        self._state = new_state
        self.logger.info(
            "Circuit breaker state change",
            operation=self.name,
            from_state=old_state.value,
            to_state=new_state.value,
            failure_count=self._failure_count
        )
        if self.on_state_change is not None:
            self.on_state_change(self.name, old_state.value, new_state.value)

    def _should_attempt_call(self) -> bool:
        """Determine if a call should be attempted based on current state."""
        if self._state == CircuitBreakerState.OPEN:
            if self._can_attempt_reset():
                self._success_count = 0
                self._transition(CircuitBreakerState.HALF_OPEN)
                return True
            return False
        return True

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Execute function with circuit breaker protection."""
        if not self._should_attempt_call():
            raise CircuitOpenError(
                self.name,
                details={"failure_count": self._failure_count}
            )

        self._total_requests += 1

        try:
            result = await asyncio.wait_for(
                func(*args, **kwargs),
                timeout=self.config.request_timeout
            )
        except asyncio.TimeoutError as e:
            self._record_failure()
            raise RuleTimeoutError(
                f"Operation '{self.name}' timed out after {self.config.request_timeout}s",
                timeout=self.config.request_timeout,
                operation=self.name,
                cause=e
            ) from e
        except Exception:
            self._record_failure()
            raise

        self._record_success()
        return result

    def _record_success(self):
        self._total_successes += 1
        self._last_success_time = self.clock()

        if self._state == CircuitBreakerState.HALF_OPEN:
            self._success_count += 1
            if self._success_count >= self.config.success_threshold:
                self._failure_count = 0
                self._success_count = 0
                self._transition(CircuitBreakerState.CLOSED)
        else:
            self._failure_count = 0

    def _record_failure(self):
        """Record a failure and update state."""
        self._failure_count += 1
        self._total_failures += 1
        self._last_failure_time = self.clock()
        self._success_count = 0

        if self._state == CircuitBreakerState.HALF_OPEN:
            self._transition(CircuitBreakerState.OPEN)
        elif self._failure_count >= self.config.failure_threshold:
            self.logger.warning(
                "Circuit breaker opened due to failures",
                failure_count=self._failure_count,
                threshold=self.config.failure_threshold
            )
            self._transition(CircuitBreakerState.OPEN)

    def reset(self):
        """Return to a fresh closed state."""
        self._transition(CircuitBreakerState.CLOSED)
        self._failure_count = 0
        self._success_count = 0
        self._total_requests = 0
        self._total_failures = 0
        self._total_successes = 0
        self._last_failure_time = None
        self._last_success_time = None

    def get_state(self) -> Dict[str, Any]:
        """Get current circuit breaker state."""
        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "success_count": self._success_count,
            "total_requests": self._total_requests,
            "total_failures": self._total_failures,
            "total_successes": self._total_successes,
            "last_failure_at": self._last_failure_time,
            "last_success_at": self._last_success_time,
            "failure_threshold": self.config.failure_threshold,
            "success_threshold": self.config.success_threshold,
            "reset_timeout": self.config.reset_timeout,
        }

    def is_open(self) -> bool:
        """Check if circuit breaker is in OPEN state."""
        return self._state == CircuitBreakerState.OPEN


class CircuitBreakerRegistry:
    """Circuit breakers keyed by operation name, created lazily."""

    def __init__(self,
                 default_config: Optional[CircuitBreakerConfig] = None,
                 clock: Callable[[], float] = time.time,
                 on_state_change: Optional[StateChangeCallback] = None):
        self.default_config = default_config or CircuitBreakerConfig()
        self.clock = clock
        self.on_state_change = on_state_change
        self.circuit_breakers: Dict[str, CircuitBreaker] = {}
        self.logger = get_logger("resilience.circuit_breaker_registry")

    def get_or_create(self, name: str, config: Optional[CircuitBreakerConfig] = None) -> CircuitBreaker:
        """Get or create a circuit breaker."""
        breaker = self.circuit_breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(
                name,
                config=config or self.default_config,
                clock=self.clock,
                on_state_change=self.on_state_change
            )
            self.circuit_breakers[name] = breaker
            self.logger.info("Created circuit breaker", name=name)
        return breaker

    def get_stats(self, name: str) -> Optional[Dict[str, Any]]:
        breaker = self.circuit_breakers.get(name)
        return breaker.get_state() if breaker else None

    def get_all_stats(self) -> Dict[str, Dict[str, Any]]:
        """Get states of all circuit breakers."""
        return {
            name: cb.get_state()
            for name, cb in self.circuit_breakers.items()
        }

    def reset(self, name: Optional[str] = None) -> bool:
        """Reset one breaker, or all of them when no name is given."""
        if name is None:
            for breaker in self.circuit_breakers.values():
                breaker.reset()
            return True
        breaker = self.circuit_breakers.get(name)
        if breaker is None:
            return False
        breaker.reset()
        return True
