"""
Token-bucket rate limiter.

Each external-call site receives its own limiter instance; nothing here is
module-global, so concurrent runs and tests never share token counts.
"""

import time
import logging
from typing import Callable

logger = logging.getLogger(__name__)


class TokenBucket:
    """
    Blocking token bucket.

    ``acquire()`` waits until a token is available instead of failing.
    """

    def __init__(self, capacity: float, refill_rate: float,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        """
        Args:
            capacity: Maximum burst size in tokens
            refill_rate: Tokens added per second
            clock: Monotonic clock, injectable for tests
            sleep: Sleep function, injectable for tests
        """
        if capacity <= 0 or refill_rate <= 0:
            raise ValueError("capacity and refill_rate must be positive")
        self.capacity = float(capacity)
        self.refill_rate = float(refill_rate)
        self.clock = clock
        self.sleep = sleep
        self.tokens = float(capacity)
        self.last_refill = clock()
        self.total_wait = 0.0

    @classmethod
    def fixed_interval(cls, requests_per_second: float, **kwargs) -> "TokenBucket":
        """A bucket of one token: calls are spaced ``1 / requests_per_second`` apart."""
        return cls(capacity=1, refill_rate=requests_per_second, **kwargs)

    def _refill(self):
        now = self.clock()
        elapsed = now - self.last_refill
        if elapsed > 0:
            self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    def acquire(self, tokens: float = 1.0):
        if tokens > self.capacity:
            raise ValueError("Cannot acquire more tokens than the bucket holds")
        while True:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return
            wait = (tokens - self.tokens) / self.refill_rate
            self.total_wait += wait
            self.sleep(wait)
