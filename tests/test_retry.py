"""Tests for terrik.retry."""

import pytest
from pydantic import ValidationError

from terrik.errors import PermanentError, TransientError
from terrik.retry import RetryPolicy


class Flaky:
    def __init__(self, failures, error=TransientError("throttled")):
        self.failures = failures
        self.error = error
        self.calls = 0

    def __call__(self, value="ok"):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return value


class TestDelays:
    def test_exponential_without_jitter(self):
        policy = RetryPolicy(max_attempts=5, initial_delay=1, multiplier=2, max_delay=30, jitter=0)
        assert list(policy.delays()) == [1, 2, 4, 8]

    def test_capped_at_max_delay(self):
        policy = RetryPolicy(max_attempts=6, initial_delay=1, multiplier=10, max_delay=5, jitter=0)
        assert list(policy.delays()) == [1, 5, 5, 5, 5]

    def test_jitter_bounded(self):
        policy = RetryPolicy(max_attempts=4, initial_delay=2, multiplier=1, jitter=0.5)
        for delay in policy.delays():
            assert 2 <= delay <= 3

    def test_single_attempt_never_waits(self):
        assert list(RetryPolicy(max_attempts=1).delays()) == []

    def test_invalid_attempts(self):
        with pytest.raises(ValidationError):
            RetryPolicy(max_attempts=0)


class TestCall:
    def test_success_first_try(self):
        sleeps = []
        fn = Flaky(0)
        assert RetryPolicy().call(fn, "done", sleep=sleeps.append) == "done"
        assert fn.calls == 1
        assert sleeps == []

    def test_transient_then_success(self):
        sleeps = []
        fn = Flaky(2)
        policy = RetryPolicy(max_attempts=3, initial_delay=0.5, jitter=0)
        assert policy.call(fn, sleep=sleeps.append) == "ok"
        assert fn.calls == 3
        assert sleeps == [0.5, 1.0]

    def test_exhausted_reraises_last_transient(self):
        sleeps = []
        fn = Flaky(10)
        with pytest.raises(TransientError, match="throttled"):
            RetryPolicy(max_attempts=3, jitter=0).call(fn, sleep=sleeps.append)
        assert fn.calls == 3
        assert len(sleeps) == 2

    def test_permanent_not_retried(self):
        fn = Flaky(10, PermanentError("denied"))
        with pytest.raises(PermanentError):
            RetryPolicy(max_attempts=5).call(fn, sleep=lambda _: None)
        assert fn.calls == 1

    def test_other_exceptions_not_retried(self):
        fn = Flaky(10, KeyError("x"))
        with pytest.raises(KeyError):
            RetryPolicy(max_attempts=5).call(fn, sleep=lambda _: None)
        assert fn.calls == 1

    def test_on_retry_callback(self):
        seen = []
        RetryPolicy(max_attempts=3, jitter=0).call(
            Flaky(2), sleep=lambda _: None, on_retry=lambda attempt, exc: seen.append((attempt, str(exc)))
        )
        assert seen == [(1, "throttled"), (2, "throttled")]
