"""
Copy-trading automation: bounded retry helper

Shared by every remote call (telemetry, subscription gateway). Exponential
backoff with full jitter: delay = random(0, min(cap, base * 2^attempt)).
Returns a typed result instead of raising so callers decide how to surface
the final failure.
"""

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Generic, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: bool = True

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number `attempt` (0-based)."""
        ceiling = min(self.max_delay, self.base_delay * (2 ** attempt))
        if not self.jitter:
            return ceiling
        return random.uniform(0, ceiling)


NO_RETRY = RetryPolicy(max_attempts=1, base_delay=0.0, max_delay=0.0, jitter=False)


@dataclass
class RetryResult(Generic[T]):
    ok: bool
    value: Optional[T] = None
    error: Optional[Exception] = None
    attempts: int = 0

    def unwrap(self) -> T:
        if not self.ok:
            assert self.error is not None
            raise self.error
        return self.value  # type: ignore[return-value]


def call_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
    label: str = "remote call",
) -> RetryResult[T]:
    """
    Call `fn` up to `policy.max_attempts` times.

    Only exceptions in `retry_on` are retried; anything else is returned
    immediately as a failed result after one attempt.
    """
    attempts = max(1, policy.max_attempts)
    last_error: Optional[Exception] = None

    for attempt in range(attempts):
        try:
            return RetryResult(ok=True, value=fn(), attempts=attempt + 1)
        except retry_on as exc:  # type: ignore[misc]
            last_error = exc
            if attempt < attempts - 1:
                delay = policy.delay_for(attempt)
                logger.warning(
                    f"{label} failed ({exc}), attempt {attempt + 1}/{attempts}; retrying in {delay:.1f}s"
                )
                sleep(delay)
        except Exception as exc:
            logger.debug(f"{label} failed with non-retryable error: {exc}")
            return RetryResult(ok=False, error=exc, attempts=attempt + 1)

    if attempts > 1:
        logger.error(f"All {attempts} attempts exhausted for {label}")
    return RetryResult(ok=False, error=last_error, attempts=attempts)
