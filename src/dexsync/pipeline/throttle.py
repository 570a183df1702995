"""Per-source rate limiting and circuit breaking."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from enum import Enum
from typing import Callable

from dexsync.config import CircuitBreakerConfig, RateLimitConfig
from dexsync.errors import SourceUnavailableError

LOGGER = logging.getLogger(__name__)


class RateLimiter:
    """Token bucket (per second, with burst) plus a sliding per-minute window.

    ``acquire()`` blocks until a request may proceed; it never fails.
    """

    def __init__(
        self,
        config: RateLimitConfig,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(config.burst_limit)
        self._last_refill = clock()
        self._window: deque[float] = deque()
        self._lock = threading.Lock()

    @property
    def tokens(self) -> float:
        return self._tokens

    def _refill(self, now: float) -> None:
        elapsed = max(0.0, now - self._last_refill)
        self._tokens = min(
            float(self.config.burst_limit),
            self._tokens + elapsed * self.config.requests_per_second,
        )
        self._last_refill = now

    def acquire(self) -> float:
        """Take one token, sleeping as needed. Returns the total time waited."""
        waited = 0.0
        with self._lock:
            while True:
                now = self._clock()
                self._refill(now)
                while self._window and self._window[0] <= now - 60.0:
                    self._window.popleft()

                delay = 0.0
                if self._tokens < 1.0:
                    delay = (1.0 - self._tokens) / self.config.requests_per_second
                if len(self._window) >= self.config.requests_per_minute:
                    delay = max(delay, self._window[0] + 60.0 - now)

                if delay <= 0.0:
                    self._tokens -= 1.0
                    self._window.append(now)
                    return waited

                LOGGER.debug("Rate limit reached, waiting %.3fs", delay)
                self._sleep(delay)
                waited += delay


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Fast-fails a source after repeated consecutive failures."""

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.config = config
        self._clock = clock
        self.state = BreakerState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.opened_at: float | None = None

    def retry_after(self) -> float:
        if self.state is not BreakerState.OPEN or self.opened_at is None:
            return 0.0
        return max(0.0, self.opened_at + self.config.reset_timeout - self._clock())

    def allow(self) -> bool:
        if self.state is BreakerState.OPEN:
            if self.retry_after() > 0.0:
                return False
            LOGGER.info("Circuit for %s half-open, allowing trial requests", self.name)
            self.state = BreakerState.HALF_OPEN
            self.success_count = 0
        return True

    def check(self) -> None:
        if not self.allow():
            raise SourceUnavailableError(self.name, retry_after=self.retry_after())

    def record_success(self) -> None:
        if self.state is BreakerState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= self.config.half_open_successes:
                LOGGER.info("Circuit for %s closed", self.name)
                self.state = BreakerState.CLOSED
                self.failure_count = 0
        else:
            self.failure_count = 0

    def record_failure(self) -> None:
        self.failure_count += 1
        if self.state is BreakerState.HALF_OPEN or self.failure_count >= self.config.failure_threshold:
            if self.state is not BreakerState.OPEN:
                LOGGER.warning(
                    "Circuit for %s opened after %d consecutive failures",
                    self.name,
                    self.failure_count,
                )
            self.state = BreakerState.OPEN
            self.opened_at = self._clock()
