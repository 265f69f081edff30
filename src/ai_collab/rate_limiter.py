"""
Token bucket rate limiter.

Tokens accumulate at a fixed refill rate up to the bucket capacity. Refill is
computed lazily whenever the bucket is inspected, so there is no background
timer. A single lock covers refill-then-consume, which keeps the bucket
consistent when several swarm agents share it.
"""

import threading
import time
from typing import Callable


class RateLimitExceeded(Exception):
    """Raised when a caller gives up waiting for tokens."""


class TokenBucket:
    """
    Token bucket with time-based refill.

    Usage:
        bucket = TokenBucket(capacity=10, refill_rate=2)
        if bucket.try_consume():
            call_the_api()
    """

    def __init__(
        self,
        capacity: float,
        refill_rate: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize a full bucket.

        Args:
            capacity: Maximum number of tokens the bucket holds
            refill_rate: Tokens added per second
            clock: Monotonic time source in seconds (injectable for tests)
            sleep: Sleep function used by acquire() (injectable for tests)
        """
        if capacity <= 0:
            raise ValueError("Capacity must be greater than 0")
        if refill_rate <= 0:
            raise ValueError("Refill rate must be greater than 0")

        self.capacity = capacity
        self.refill_rate = refill_rate
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._tokens = float(capacity)
        self._last_refill = clock()

    def _refill(self) -> None:
        # Caller must hold self._lock
        now = self._clock()
        elapsed = max(0.0, now - self._last_refill)
        self._tokens = min(self.capacity, self._tokens + elapsed * self.refill_rate)
        self._last_refill = now

    def _check_request(self, tokens: float) -> None:
        if tokens <= 0:
            raise ValueError("Token count must be greater than 0")
        if tokens > self.capacity:
            raise ValueError("Token count exceeds bucket capacity")

    def try_consume(self, tokens: float = 1) -> bool:
        """
        Attempt to take tokens from the bucket.

        Refills first, then consumes only if enough tokens are available.
        State is left untouched when the request is denied.

        Returns:
            True if the tokens were consumed, False otherwise
        """
        self._check_request(tokens)
        with self._lock:
            self._refill()
            if self._tokens >= tokens:
                self._tokens -= tokens
                return True
            return False

    def peek(self) -> float:
        """Return the number of tokens currently available (after refill)."""
        with self._lock:
            self._refill()
            return self._tokens

    def reset(self) -> None:
        """Refill the bucket to full capacity."""
        with self._lock:
            self._tokens = float(self.capacity)
            self._last_refill = self._clock()

    def acquire(self, tokens: float = 1, timeout: float | None = None) -> bool:
        """
        Block until tokens can be consumed or the timeout passes.

        Sleeps for the time the current deficit needs to refill rather than
        polling.

        Args:
            tokens: Number of tokens to consume
            timeout: Maximum seconds to wait (None waits indefinitely)

        Returns:
            True once the tokens were consumed, False on timeout
        """
        self._check_request(tokens)
        deadline = None if timeout is None else self._clock() + timeout

        while True:
            with self._lock:
                self._refill()
                if self._tokens >= tokens:
                    self._tokens -= tokens
                    return True
                wait = (tokens - self._tokens) / self.refill_rate

            if deadline is not None:
                remaining = deadline - self._clock()
                if remaining <= 0:
                    return False
                wait = min(wait, remaining)

            self._sleep(wait)
