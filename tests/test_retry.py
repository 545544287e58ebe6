import pytest

from regionproxy.errors import BackendRejectedError, WaitTimeoutError
from regionproxy.retry import RetryPolicy, poll, retry_call


class FakeClock:
    def __init__(self):
        self.sleeps: list[float] = []

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)


def test_policy_budget():
    assert RetryPolicy(attempts=60, delay=5).budget == 295
    assert RetryPolicy(attempts=3, delay=1, backoff=2).budget == 3


def test_retry_succeeds_after_failures():
    clock = FakeClock()
    outcomes = iter([BackendRejectedError("in use"), BackendRejectedError("in use"), "ok"])

    def flaky():
        outcome = next(outcomes)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    result = retry_call(
        flaky,
        RetryPolicy(attempts=5, delay=5),
        retry_on=(BackendRejectedError,),
        sleep=clock.sleep,
    )

    assert result == "ok"
    assert clock.sleeps == [5, 5]


def test_retry_reraises_last_error_when_exhausted():
    clock = FakeClock()
    calls = []

    def always_fails():
        calls.append(1)
        raise BackendRejectedError(f"attempt {len(calls)}")

    with pytest.raises(BackendRejectedError, match="attempt 5"):
        retry_call(always_fails, RetryPolicy(attempts=5, delay=5), sleep=clock.sleep)

    assert len(calls) == 5
    assert clock.sleeps == [5, 5, 5, 5]


def test_retry_does_not_catch_other_errors():
    def boom():
        raise KeyError("nope")

    with pytest.raises(KeyError):
        retry_call(
            boom,
            RetryPolicy(attempts=3, delay=1),
            retry_on=(BackendRejectedError,),
            sleep=FakeClock().sleep,
        )


def test_retry_exponential_backoff():
    clock = FakeClock()
    with pytest.raises(BackendRejectedError):
        retry_call(
            lambda: (_ for _ in ()).throw(BackendRejectedError("x")),
            RetryPolicy(attempts=4, delay=1, backoff=2),
            sleep=clock.sleep,
        )
    assert clock.sleeps == [1, 2, 4]


def test_poll_returns_first_value():
    clock = FakeClock()
    values = iter([None, None, "203.0.113.10"])

    assert poll(lambda: next(values), RetryPolicy(attempts=10, delay=5), sleep=clock.sleep) == "203.0.113.10"
    assert clock.sleeps == [5, 5]


def test_poll_times_out():
    clock = FakeClock()
    with pytest.raises(WaitTimeoutError, match="after 3 attempts"):
        poll(lambda: None, RetryPolicy(attempts=3, delay=2), sleep=clock.sleep, what="nothing")
    assert clock.sleeps == [2, 2]


def test_poll_propagates_check_errors_immediately():
    clock = FakeClock()

    def terminated():
        raise BackendRejectedError("terminated unexpectedly")

    with pytest.raises(BackendRejectedError):
        poll(terminated, RetryPolicy(attempts=60, delay=5), sleep=clock.sleep)
    assert clock.sleeps == []
