"""
Retry policy shared by the registry and geocoding clients.

Transient failures are retried with capped exponential backoff plus jitter.
Fatal failures propagate immediately. Anything else is not retried.
"""

import random
import time
import logging
from typing import Callable, Optional, Tuple, Type, TypeVar

from ..errors import FatalExternalError, TransientExternalError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy:
    """
    Bounded retry with exponential backoff.

    ``max_attempts`` counts the first call, so ``max_attempts=4`` means one
    call plus up to three retries.
    """

    def __init__(self, max_attempts: int = 5, initial_delay: float = 1.0,
                 max_delay: float = 32.0, jitter: float = 0.1,
                 retryable: Tuple[Type[BaseException], ...] = (TransientExternalError,),
                 sleep: Callable[[float], None] = time.sleep):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.retryable = retryable
        self.sleep = sleep

    @classmethod
    def from_config(cls, config: dict, sleep: Callable[[float], None] = time.sleep) -> "RetryPolicy":
        return cls(
            max_attempts=config.get("max_attempts", 5),
            initial_delay=config.get("initial_delay", 1.0),
            max_delay=config.get("max_delay", 32.0),
            jitter=config.get("jitter", 0.1),
            sleep=sleep,
        )

    def backoff_delay(self, retry_count: int) -> float:
        """Calculate exponential backoff delay with jitter."""
        delay = min(self.initial_delay * (2 ** retry_count), self.max_delay)
        if self.jitter:
            delay += random.uniform(0, delay * self.jitter)
        return delay

    def is_retryable(self, error: BaseException) -> bool:
        if isinstance(error, FatalExternalError):
            return False
        return isinstance(error, self.retryable)

    def call(self, fn: Callable[[], T], description: Optional[str] = None) -> T:
        """
        Call ``fn`` until it succeeds, fails fatally or runs out of attempts.

        Args:
            fn: Zero-argument callable performing one external request
            description: Label used in log messages

        Returns:
            Whatever ``fn`` returns

        Raises:
            FatalExternalError: Immediately, without retrying
            TransientExternalError: After the last attempt fails
        """
        label = description or getattr(fn, "__name__", "external call")
        attempt = 0
        while True:
            try:
                return fn()
            except Exception as e:
                if not self.is_retryable(e):
                    raise
                attempt += 1
                if attempt >= self.max_attempts:
                    logger.warning(f"{label} failed after {attempt} attempts: {e}")
                    raise
                delay = self.backoff_delay(attempt - 1)
                logger.info(f"{label} failed ({e}); retry {attempt}/{self.max_attempts - 1} in {delay:.1f}s")
                self.sleep(delay)
