"""
Tests for the token bucket rate limiter.
"""

import threading

import pytest

from ai_collab.rate_limiter import TokenBucket


class TestTokenBucketInit:
    """Tests for constructor validation."""

    def test_starts_full(self, fake_clock):
        """A new bucket holds its full capacity."""
        bucket = TokenBucket(10, 2, clock=fake_clock)
        assert bucket.peek() == 10

    @pytest.mark.parametrize("capacity", [0, -1])
    def test_rejects_non_positive_capacity(self, capacity):
        """Capacity must be greater than zero."""
        with pytest.raises(ValueError, match="Capacity must be greater than 0"):
            TokenBucket(capacity, 1)

    @pytest.mark.parametrize("rate", [0, -0.5])
    def test_rejects_non_positive_refill_rate(self, rate):
        """Refill rate must be greater than zero."""
        with pytest.raises(ValueError, match="Refill rate must be greater than 0"):
            TokenBucket(5, rate)


class TestTryConsume:
    """Tests for try_consume()."""

    def test_consumes_until_empty(self, fake_clock):
        """Exactly capacity requests succeed with no time passing."""
        bucket = TokenBucket(3, 1, clock=fake_clock)
        results = [bucket.try_consume() for _ in range(4)]
        assert results == [True, True, True, False]

    def test_denied_request_leaves_tokens_untouched(self, fake_clock):
        """A denied request does not consume anything."""
        bucket = TokenBucket(5, 1, clock=fake_clock)
        assert bucket.try_consume(4)
        assert not bucket.try_consume(2)
        assert bucket.peek() == 1

    def test_refills_over_time(self, fake_clock):
        """Tokens come back at refill_rate per second."""
        bucket = TokenBucket(10, 2, clock=fake_clock)
        assert bucket.try_consume(10)
        fake_clock.advance(1.5)
        assert bucket.peek() == pytest.approx(3.0)
        assert bucket.try_consume(3)
        assert not bucket.try_consume(1)

    def test_refill_is_capped_at_capacity(self, fake_clock):
        """Long idle periods never overfill the bucket."""
        bucket = TokenBucket(5, 10, clock=fake_clock)
        bucket.try_consume(5)
        fake_clock.advance(3600)
        assert bucket.peek() == 5

    def test_conservation_over_interval(self, fake_clock):
        """Consumed tokens never exceed capacity plus refill over the interval."""
        bucket = TokenBucket(4, 2, clock=fake_clock)
        consumed = 0
        for _ in range(100):
            if bucket.try_consume():
                consumed += 1
            fake_clock.advance(0.1)
        # 100 ticks of 0.1s = 10s of refill at 2/s
        assert consumed <= 4 + 2 * 10

    def test_liveness_after_full_depletion(self, fake_clock):
        """Capacity 10 at 2/s: 2 tokens after 1s, a full bucket after 5s."""
        bucket = TokenBucket(10, 2, clock=fake_clock)
        assert bucket.try_consume(10)

        fake_clock.advance(1)
        assert bucket.peek() == pytest.approx(2.0)

        fake_clock.advance(4)
        assert bucket.try_consume(10)

    @pytest.mark.parametrize("tokens", [0, -1])
    def test_rejects_non_positive_count(self, tokens):
        """Token count must be positive."""
        bucket = TokenBucket(5, 1)
        with pytest.raises(ValueError, match="Token count must be greater than 0"):
            bucket.try_consume(tokens)

    def test_rejects_count_above_capacity(self):
        """A request that can never be satisfied is an error."""
        bucket = TokenBucket(5, 1)
        with pytest.raises(ValueError, match="exceeds bucket capacity"):
            bucket.try_consume(6)

    def test_thread_safe_consumption(self):
        """Concurrent consumers never take more than the bucket holds."""
        bucket = TokenBucket(50, 0.001)
        successes = []
        lock = threading.Lock()

        def worker():
            for _ in range(20):
                if bucket.try_consume():
                    with lock:
                        successes.append(1)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        # 160 attempts against 50 tokens; refill is negligible
        assert 50 <= len(successes) <= 51


class TestResetAndAcquire:
    """Tests for reset() and acquire()."""

    def test_reset_refills(self, fake_clock):
        """reset() puts the bucket back to full."""
        bucket = TokenBucket(5, 1, clock=fake_clock)
        bucket.try_consume(5)
        bucket.reset()
        assert bucket.peek() == 5

    def test_acquire_returns_immediately_when_available(self, fake_clock):
        """No sleeping when tokens are already there."""
        bucket = TokenBucket(5, 1, clock=fake_clock, sleep=fake_clock.sleep)
        assert bucket.acquire(2)
        assert fake_clock.sleeps == []

    def test_acquire_sleeps_for_deficit(self, fake_clock):
        """acquire() waits exactly as long as the deficit needs to refill."""
        bucket = TokenBucket(4, 2, clock=fake_clock, sleep=fake_clock.sleep)
        bucket.try_consume(4)
        assert bucket.acquire(3)
        assert fake_clock.sleeps == [pytest.approx(1.5)]
        assert bucket.peek() == pytest.approx(0.0)

    def test_acquire_times_out(self, fake_clock):
        """acquire() gives up once the timeout passes."""
        bucket = TokenBucket(4, 1, clock=fake_clock, sleep=fake_clock.sleep)
        bucket.try_consume(4)
        assert not bucket.acquire(4, timeout=2)
        assert sum(fake_clock.sleeps) == pytest.approx(2)
