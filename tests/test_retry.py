import pytest

from image_customizer.errors import RetryExhausted, TransientResourceBusy
from image_customizer.retry import FixedBackoff, LinearBackoff, retry_with_backoff


def _flaky(failures, exc=TransientResourceBusy):
    calls = {"n": 0}

    def op():
        calls["n"] += 1
        if calls["n"] <= failures:
            raise exc(f"attempt {calls['n']}")
        return calls["n"]

    return op, calls


def test_succeeds_after_transient_failures(sleep):
    op, calls = _flaky(2)
    assert retry_with_backoff(op, max_attempts=3, backoff=FixedBackoff(5.0), sleep=sleep) == 3
    assert sleep.calls == [5.0, 5.0]


def test_exhaustion_carries_last_error(sleep):
    op, calls = _flaky(10)
    with pytest.raises(RetryExhausted) as ei:
        retry_with_backoff(op, max_attempts=4, backoff=LinearBackoff(0.5), sleep=sleep)

    assert ei.value.attempts == 4
    assert isinstance(ei.value.last_error, TransientResourceBusy)
    assert calls["n"] == 4
    assert sleep.calls == [0.5, 1.0, 1.5]


def test_other_errors_are_not_retried(sleep):
    op, calls = _flaky(1, exc=KeyError)
    with pytest.raises(KeyError):
        retry_with_backoff(op, max_attempts=3, backoff=FixedBackoff(1.0), sleep=sleep)
    assert calls["n"] == 1
    assert sleep.calls == []


def test_before_attempt_runs_every_attempt(sleep):
    seen = []
    op, _ = _flaky(2)
    retry_with_backoff(op, max_attempts=5, backoff=FixedBackoff(0), before_attempt=seen.append, sleep=sleep)
    assert seen == [1, 2, 3]


def test_max_attempts_must_be_positive():
    with pytest.raises(ValueError):
        retry_with_backoff(lambda: None, max_attempts=0, backoff=FixedBackoff(0))
