"""
Per-channel request throttling for the venue APIs

The telemetry and copy-trading APIs meter each token separately, so the
runner gives every remote channel ("telemetry", "copier") its own token
bucket. Callers block until a token frees up instead of provoking HTTP 429,
which would otherwise be counted as a telemetry failure against the account.
"""
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from threading import Lock
from typing import Callable, Deque, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

VIOLATION_WINDOW_SECONDS = 60.0


class RateLimitExceeded(ValueError):
    """Raised by a non-blocking acquire when the channel has no token left."""


@dataclass
class TokenBucket:
    """
    Refills at `refill_rate` tokens/second up to `capacity` (the burst).
    """
    capacity: float
    refill_rate: float
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)
    tokens: float = field(init=False)
    last_refill: float = field(init=False)

    def __post_init__(self):
        self.tokens = self.capacity
        self.last_refill = self.clock()

    def refill(self) -> None:
        now = self.clock()
        self.tokens = min(self.capacity, self.tokens + (now - self.last_refill) * self.refill_rate)
        self.last_refill = now

    def consume(self, tokens: float = 1.0) -> bool:
        self.refill()
        if self.tokens < tokens:
            return False
        self.tokens -= tokens
        return True

    def wait_time(self, tokens: float = 1.0) -> float:
        """Seconds until `tokens` are available (0 if available now)."""
        self.refill()
        missing = tokens - self.tokens
        return 0.0 if missing <= 0 else missing / self.refill_rate


@dataclass
class RateLimitStats:
    total_requests: int = 0
    blocked_requests: int = 0
    total_wait_time_ms: float = 0.0
    max_wait_time_ms: float = 0.0

    def record_wait(self, wait_time_seconds: float) -> None:
        self.total_requests += 1
        if wait_time_seconds <= 0:
            return
        wait_ms = wait_time_seconds * 1000.0
        self.blocked_requests += 1
        self.total_wait_time_ms += wait_ms
        self.max_wait_time_ms = max(self.max_wait_time_ms, wait_ms)

    def utilization_pct(self) -> float:
        """Share of requests that had to wait."""
        if not self.total_requests:
            return 0.0
        return 100.0 * self.blocked_requests / self.total_requests


@dataclass
class _Channel:
    bucket: TokenBucket
    stats: RateLimitStats = field(default_factory=RateLimitStats)
    # (monotonic time, endpoint, wait seconds)
    throttled: Deque[Tuple[float, str, float]] = field(default_factory=lambda: deque(maxlen=100))


class RateLimiter:
    """
    One bucket per remote channel, shared by every thread of the process.

    Usage:
        limiter = RateLimiter({"telemetry": 5.0, "copier": 2.0})
        limiter.acquire("telemetry", endpoint="account-information")
    """

    def __init__(self, limits: Optional[Dict[str, float]] = None, burst_multiplier: float = 2.0,
                 clock: Callable[[], float] = time.monotonic):
        limits = limits or {"telemetry": 5.0}
        self._clock = clock
        self._channels: Dict[str, _Channel] = {
            name: _Channel(TokenBucket(max(1.0, rate * burst_multiplier), rate, clock=clock))
            for name, rate in limits.items()
        }
        self._lock = Lock()
        logger.info(
            "Rate limits: %s (burst %.1fx)",
            ", ".join(f"{name}={rate}/s" for name, rate in limits.items()),
            burst_multiplier,
        )

    @property
    def channels(self) -> List[str]:
        return list(self._channels)

    def _channel(self, name: str) -> _Channel:
        channel = self._channels.get(name)
        if channel is None:
            raise ValueError(f"Unknown rate limit channel '{name}' (known: {sorted(self._channels)})")
        return channel

    def acquire(self, channel: str, endpoint: str = "unknown", tokens: float = 1.0, block: bool = True) -> float:
        """
        Take `tokens` from the channel's bucket, sleeping if it is empty.

        Returns the seconds waited. With block=False an empty bucket raises
        RateLimitExceeded instead of sleeping.
        """
        limit = self._channel(channel)

        with self._lock:
            wait = limit.bucket.wait_time(tokens)
            if wait == 0:
                limit.bucket.consume(tokens)
                limit.stats.record_wait(0.0)
                return 0.0
            if not block:
                raise RateLimitExceeded(f"{channel}:{endpoint} throttled for another {wait:.2f}s")
            limit.throttled.append((self._clock(), endpoint, wait))

        log = logger.warning if wait > 1.0 else logger.debug
        log(f"Throttling {channel}:{endpoint} for {wait:.3f}s")

        # Sleep without the lock so other channels keep flowing
        time.sleep(wait)

        with self._lock:
            limit.bucket.consume(tokens)
            limit.stats.record_wait(wait)
        return wait

    def get_stats(self, channel: str) -> Dict:
        limit = self._channel(channel)
        with self._lock:
            cutoff = self._clock() - VIOLATION_WINDOW_SECONDS
            return {
                "channel": channel,
                "total_requests": limit.stats.total_requests,
                "blocked_requests": limit.stats.blocked_requests,
                "utilization_pct": limit.stats.utilization_pct(),
                "max_wait_time_ms": limit.stats.max_wait_time_ms,
                "current_tokens": limit.bucket.tokens,
                "capacity": limit.bucket.capacity,
                "refill_rate": limit.bucket.refill_rate,
                "recent_violations": sum(1 for ts, _, _ in limit.throttled if ts >= cutoff),
            }

    def reset_stats(self) -> None:
        with self._lock:
            for limit in self._channels.values():
                limit.stats = RateLimitStats()
                limit.throttled.clear()


__all__ = ["RateLimiter", "RateLimitExceeded", "RateLimitStats", "TokenBucket"]
