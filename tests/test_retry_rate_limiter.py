"""
Unit tests for the retry policy and token-bucket rate limiter.
"""

import pytest
import sys
from pathlib import Path

# Add src to path
sys.path.append(str(Path(__file__).parent.parent / "src"))

from provider_trust.errors import FatalExternalError, TransientExternalError
from provider_trust.external.rate_limiter import TokenBucket
from provider_trust.external.retry import RetryPolicy


class FakeClock:
    """Monotonic clock whose sleep advances time."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds


class TestRetryPolicy:
    """Test cases for bounded exponential backoff."""

    def setup_method(self):
        """Setup test fixtures."""
        self.sleeps = []
        self.policy = RetryPolicy(max_attempts=4, initial_delay=1.0, max_delay=4.0, jitter=0.0,
                                  sleep=self.sleeps.append)

    def test_backoff_delay(self):
        """Test doubling with a cap."""
        assert [self.policy.backoff_delay(n) for n in range(5)] == [1.0, 2.0, 4.0, 4.0, 4.0]

    def test_backoff_jitter(self):
        """Jitter adds at most the configured fraction."""
        policy = RetryPolicy(initial_delay=1.0, max_delay=32.0, jitter=0.1)
        for _ in range(50):
            assert 2.0 <= policy.backoff_delay(1) <= 2.2

    def test_transient_then_success(self):
        """Test that a transient failure is retried."""
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise TransientExternalError("503")
            return "ok"

        assert self.policy.call(flaky) == "ok"
        assert len(calls) == 3
        assert self.sleeps == [1.0, 2.0]

    def test_exhausted(self):
        """Test that the last transient failure propagates."""
        calls = []

        def always_down():
            calls.append(1)
            raise TransientExternalError("timeout")

        with pytest.raises(TransientExternalError):
            self.policy.call(always_down)
        assert len(calls) == 4
        assert self.sleeps == [1.0, 2.0, 4.0]

    def test_fatal_not_retried(self):
        """Test that fatal failures propagate immediately."""
        calls = []

        def denied():
            calls.append(1)
            raise FatalExternalError("REQUEST_DENIED")

        with pytest.raises(FatalExternalError):
            self.policy.call(denied)
        assert len(calls) == 1
        assert self.sleeps == []

    def test_other_errors_not_retried(self):
        """Test that programming errors are not retried."""
        def broken():
            raise KeyError("lat")

        with pytest.raises(KeyError):
            self.policy.call(broken)
        assert self.sleeps == []

    def test_from_config(self):
        policy = RetryPolicy.from_config({"max_attempts": 3, "initial_delay": 2.0, "max_delay": 16.0,
                                          "jitter": 0.0})
        assert policy.max_attempts == 3
        assert policy.backoff_delay(4) == 16.0

    def test_invalid_attempts(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)


class TestTokenBucket:
    """Test cases for the blocking token bucket."""

    def setup_method(self):
        """Setup test fixtures."""
        self.clock = FakeClock()

    def test_burst_then_wait(self):
        """A full bucket allows a burst, then paces calls."""
        bucket = TokenBucket(capacity=2, refill_rate=1.0, clock=self.clock, sleep=self.clock.sleep)
        bucket.acquire()
        bucket.acquire()
        assert self.clock.sleeps == []

        bucket.acquire()
        assert self.clock.sleeps == [pytest.approx(1.0)]
        assert bucket.total_wait == pytest.approx(1.0)

    def test_fixed_interval(self):
        """One request per second spaces calls a second apart."""
        bucket = TokenBucket.fixed_interval(1.0, clock=self.clock, sleep=self.clock.sleep)
        for _ in range(4):
            bucket.acquire()
        assert self.clock.now == pytest.approx(3.0)

    def test_refill_after_idle(self):
        """Test that idle time refills the bucket up to capacity."""
        bucket = TokenBucket(capacity=2, refill_rate=1.0, clock=self.clock, sleep=self.clock.sleep)
        bucket.acquire()
        bucket.acquire()
        self.clock.now += 10
        bucket.acquire()
        bucket.acquire()
        assert self.clock.sleeps == []

    def test_invalid_arguments(self):
        with pytest.raises(ValueError):
            TokenBucket(capacity=0, refill_rate=1.0)
        bucket = TokenBucket(capacity=1, refill_rate=1.0, clock=self.clock, sleep=self.clock.sleep)
        with pytest.raises(ValueError):
            bucket.acquire(2)


if __name__ == "__main__":
    pytest.main([__file__])
