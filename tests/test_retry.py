"""
Unit tests for the retrying-call helper.
"""
import pytest

from triggers.retry import RetryPolicy, call_with_retry


class Flaky:
    """Raises the queued exceptions in order, then returns 'ok'."""

    def __init__(self, *errors):
        self.errors = list(errors)
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


def test_returns_first_success_without_sleeping():
    sleeps = []
    fn = Flaky()
    assert call_with_retry(fn, RetryPolicy(3, (1, 2, 4)), sleep=sleeps.append) == "ok"
    assert fn.calls == 1
    assert sleeps == []


def test_follows_backoff_ladder_between_attempts():
    sleeps = []
    fn = Flaky(IOError("a"), IOError("b"))
    assert call_with_retry(fn, RetryPolicy(3, (1, 2, 4)), sleep=sleeps.append) == "ok"
    assert fn.calls == 3
    assert sleeps == [1, 2]


def test_exhaustion_reraises_last_error_and_skips_final_sleep():
    sleeps = []
    fn = Flaky(IOError("a"), IOError("b"), IOError("c"))
    with pytest.raises(IOError, match="c"):
        call_with_retry(fn, RetryPolicy(3, (1, 2, 4)), sleep=sleeps.append)
    assert fn.calls == 3
    assert sleeps == [1, 2]


def test_non_retryable_error_propagates_immediately():
    sleeps = []
    fn = Flaky(KeyError("boom"))
    with pytest.raises(KeyError):
        call_with_retry(
            fn, RetryPolicy(5, (2, 5)),
            retryable=lambda e: isinstance(e, IOError),
            sleep=sleeps.append,
        )
    assert fn.calls == 1
    assert sleeps == []


def test_delay_hint_overrides_ladder():
    sleeps = []
    fn = Flaky(IOError("a"), IOError("b"))
    hints = iter([7.0, None])
    call_with_retry(
        fn, RetryPolicy(5, (2, 5, 15)),
        delay_hint=lambda e: next(hints),
        sleep=sleeps.append,
    )
    assert sleeps == [7.0, 5]


def test_ladder_repeats_last_entry():
    policy = RetryPolicy(10, (2, 5, 15, 30, 60))
    assert [policy.delay_for(i) for i in range(7)] == [2, 5, 15, 30, 60, 60, 60]
    assert RetryPolicy(3, ()).delay_for(0) == 0.0
