"""
Tests for Rate Limiter

Validates token bucket algorithm, pre-emptive throttling, and statistics tracking.
"""
import pytest
from unittest.mock import patch

from infra.rate_limiter import RateLimiter, RateLimitStats, TokenBucket


class TestTokenBucket:
    """Test token bucket implementation"""

    def test_bucket_starts_full(self):
        bucket = TokenBucket(capacity=10.0, refill_rate=5.0)
        assert bucket.tokens == 10.0

    def test_cannot_over_consume(self):
        bucket = TokenBucket(capacity=10.0, refill_rate=0.001)
        assert bucket.consume(10.0)
        assert not bucket.consume(1.0)

    def test_tokens_refill_over_time(self):
        bucket = TokenBucket(capacity=10.0, refill_rate=10.0)
        bucket.consume(10.0)
        bucket.last_refill -= 0.5
        bucket.refill()
        assert 4.5 <= bucket.tokens <= 5.5

    def test_bucket_does_not_exceed_capacity(self):
        bucket = TokenBucket(capacity=10.0, refill_rate=10.0)
        bucket.last_refill -= 2.0
        bucket.refill()
        assert bucket.tokens == 10.0

    def test_wait_time(self):
        bucket = TokenBucket(capacity=10.0, refill_rate=0.001)
        bucket.consume(10.0)
        assert bucket.wait_time(1.0) > 100


class TestRateLimiter:

    def test_channels(self):
        limiter = RateLimiter({"telemetry": 5.0, "copier": 2.0})
        assert sorted(limiter.channels) == ["copier", "telemetry"]

    def test_unknown_channel(self):
        with pytest.raises(ValueError):
            RateLimiter().acquire("orders")

    def test_burst_is_served_without_waiting(self):
        limiter = RateLimiter({"telemetry": 5.0}, burst_multiplier=2.0)
        waits = [limiter.acquire("telemetry", endpoint="positions") for _ in range(10)]
        assert waits == [0.0] * 10
        assert limiter.get_stats("telemetry")["total_requests"] == 10

    def test_non_blocking_acquire_raises_when_empty(self):
        limiter = RateLimiter({"copier": 0.01}, burst_multiplier=1.0)
        limiter.acquire("copier")
        with pytest.raises(ValueError):
            limiter.acquire("copier", block=False)

    def test_blocking_acquire_waits_outside_lock(self):
        limiter = RateLimiter({"telemetry": 1.0}, burst_multiplier=1.0)
        limiter.acquire("telemetry")
        with patch("infra.rate_limiter.time.sleep") as sleep:
            waited = limiter.acquire("telemetry", endpoint="account-information")
        assert waited > 0
        sleep.assert_called_once()
        stats = limiter.get_stats("telemetry")
        assert stats["blocked_requests"] == 1
        assert stats["recent_violations"] == 1

    def test_reset_stats(self):
        limiter = RateLimiter({"telemetry": 5.0})
        limiter.acquire("telemetry")
        limiter.reset_stats()
        assert limiter.get_stats("telemetry")["total_requests"] == 0


def test_stats_utilization():
    stats = RateLimitStats()
    stats.record_wait(0.0)
    stats.record_wait(0.2)
    assert stats.utilization_pct() == 50.0
    assert stats.max_wait_time_ms == pytest.approx(200.0)
