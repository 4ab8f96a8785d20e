"""
Tests for the bounded retry helper

Verifies exponential backoff with full jitter and the typed result.
"""

from unittest.mock import patch

import pytest

from core.exceptions import TelemetryRejected, TelemetryUnavailable
from core.retry import NO_RETRY, RetryPolicy, call_with_retry


class Flaky:
    def __init__(self, failures, error=TelemetryUnavailable("503")):
        self.failures = failures
        self.error = error
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


class TestBackoff:

    def test_delay_ceiling_doubles_and_caps(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=5.0, jitter=False)
        assert [policy.delay_for(n) for n in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_full_jitter_stays_under_ceiling(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=30.0)
        with patch("core.retry.random.uniform", return_value=0.37) as uniform:
            assert policy.delay_for(3) == 0.37
        uniform.assert_called_once_with(0, 8.0)


class TestCallWithRetry:

    def test_succeeds_after_transient_failures(self):
        sleeps = []
        fn = Flaky(2)
        result = call_with_retry(fn, RetryPolicy(max_attempts=3), retry_on=(TelemetryUnavailable,),
                                 sleep=sleeps.append)
        assert result.ok
        assert result.value == "ok"
        assert result.attempts == 3
        assert len(sleeps) == 2

    def test_exhausted_attempts_return_last_error(self):
        sleeps = []
        fn = Flaky(10)
        result = call_with_retry(fn, RetryPolicy(max_attempts=3), retry_on=(TelemetryUnavailable,),
                                 sleep=sleeps.append)
        assert not result.ok
        assert isinstance(result.error, TelemetryUnavailable)
        assert result.attempts == 3
        assert fn.calls == 3
        assert len(sleeps) == 2

    def test_non_retryable_error_stops_immediately(self):
        fn = Flaky(10, error=TelemetryRejected("401", status_code=401))
        result = call_with_retry(fn, RetryPolicy(max_attempts=5), retry_on=(TelemetryUnavailable,),
                                 sleep=lambda _: pytest.fail("must not sleep"))
        assert not result.ok
        assert fn.calls == 1
        with pytest.raises(TelemetryRejected):
            result.unwrap()

    def test_no_retry_policy_makes_one_attempt(self):
        fn = Flaky(1)
        result = call_with_retry(fn, NO_RETRY, retry_on=(TelemetryUnavailable,),
                                 sleep=lambda _: pytest.fail("must not sleep"))
        assert not result.ok
        assert fn.calls == 1
