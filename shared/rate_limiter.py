"""
Sliding-window rate limiter keyed by operation name.
"""

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Dict, List, Callable, Optional, Any

from shared.errors import RateLimitExceededError
from shared.logging import get_logger

STRATEGIES = ("reject", "queue", "delay")


@dataclass
class RateLimiterConfig:
    """Window capacity and overflow strategy."""
    max_requests: int = 100
    window_size: float = 60.0
    strategy: str = "delay"
    max_queue_size: int = 200
    poll_interval: float = 0.1

    @classmethod
    def from_settings(cls, config) -> "RateLimiterConfig":
        return cls(
            max_requests=config.rate_limit_max_requests,
            window_size=config.rate_limit_window,
            strategy=config.rate_limit_strategy,
            max_queue_size=config.rate_limit_max_queue_size,
            poll_interval=config.rate_limit_poll_interval,
        )


class SlidingWindowRateLimiter:
    """Per-operation sliding windows of request timestamps.

    A slot is held from ``acquire`` until ``release``, so in-flight calls count
    against the limit; entries older than the window are pruned lazily.
    """

    def __init__(self,
                 default_config: Optional[RateLimiterConfig] = None,
                 clock: Callable[[], float] = time.monotonic,
                 on_reject: Optional[Callable[[str], None]] = None):
        self.default_config = default_config or RateLimiterConfig()
        self.clock = clock
        self.on_reject = on_reject
        self.logger = get_logger("resilience.rate_limiter")
        self._windows: Dict[str, List[float]] = {}
        self._queued: Dict[str, int] = {}

    def _prune(self, name: str, config: RateLimiterConfig) -> List[float]:
        window = self._windows.setdefault(name, [])
        cutoff = self.clock() - config.window_size
        while window and window[0] <= cutoff:
            window.pop(0)
        return window

    def _try_take(self, name: str, config: RateLimiterConfig) -> Optional[float]:
        window = self._prune(name, config)
        if len(window) < config.max_requests:
            stamp = self.clock()
            window.append(stamp)
            return stamp
        return None

    def _reject(self, name: str, config: RateLimiterConfig, reason: str):
        self.logger.warning(
            "Rate limit exceeded",
            operation=name,
            strategy=config.strategy,
            reason=reason,
            max_requests=config.max_requests,
            window_size=config.window_size
        )
        if self.on_reject is not None:
            self.on_reject(name)
        raise RateLimitExceededError(
            name,
            details={
                "strategy": config.strategy,
                "max_requests": config.max_requests,
                "window_size": config.window_size,
                "reason": reason,
            }
        )

    async def acquire(self, name: str, config: Optional[RateLimiterConfig] = None) -> float:
        """Take a slot in the window for ``name``; returns the slot's stamp."""
        config = config or self.default_config

        stamp = self._try_take(name, config)
        if stamp is not None:
            return stamp

        if config.strategy == "reject":
            self._reject(name, config, "window at capacity")

        if config.strategy == "queue":
            if self._queued.get(name, 0) >= config.max_queue_size:
                self._reject(name, config, "queue full")
            self._queued[name] = self._queued.get(name, 0) + 1
            try:
                while True:
                    await asyncio.sleep(config.poll_interval)
                    stamp = self._try_take(name, config)
                    if stamp is not None:
                        return stamp
            finally:
                self._queued[name] -= 1

        # delay: wait for the oldest entry to age out, then re-check
        while True:
            window = self._windows[name]
            wait = (window[0] + config.window_size - self.clock()) if window else 0.0
            self.logger.debug("Rate limit delay", operation=name, wait_seconds=round(max(wait, 0.0), 4))
            await asyncio.sleep(max(wait, 0.0))
            stamp = self._try_take(name, config)
            if stamp is not None:
                return stamp

    def release(self, name: str, stamp: float):
        """Free the slot taken by ``acquire``."""
        window = self._windows.get(name)
        if window and stamp in window:
            window.remove(stamp)

    @asynccontextmanager
    async def slot(self, name: str, config: Optional[RateLimiterConfig] = None):
        stamp = await self.acquire(name, config)
        try:
            yield
        finally:
            self.release(name, stamp)

    def in_flight(self, name: str) -> int:
        return len(self._windows.get(name, []))

    def queued(self, name: str) -> int:
        return self._queued.get(name, 0)

    def reset(self, name: Optional[str] = None):
        if name is None:
            self._windows.clear()
            self._queued.clear()
        else:
            self._windows.pop(name, None)
            self._queued.pop(name, None)

    def get_state(self) -> Dict[str, Any]:
        return {
            name: {"in_window": len(window), "queued": self._queued.get(name, 0)}
            for name, window in self._windows.items()
        }
