"""Bounded retry and polling policies.

Every wait in region-proxy goes through one of these helpers so that no loop
can block forever: a policy always has an attempt ceiling, and exhausting it
raises instead of spinning.
"""

import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from .errors import WaitTimeoutError
from .utils import debug

T = TypeVar("T")

Sleep = Callable[[float], None]


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int
    delay: float
    backoff: float = 1.0

    def delay_after(self, attempt: int) -> float:
        """Delay to wait after the given (1-based) failed attempt."""
        return self.delay * (self.backoff ** (attempt - 1))

    @property
    def budget(self) -> float:
        """Total time spent sleeping if every attempt fails."""
        return sum(self.delay_after(a) for a in range(1, self.attempts))


def retry_call(
    func: Callable[[], T],
    policy: RetryPolicy,
    *,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    sleep: Sleep = time.sleep,
    what: str = "operation",
) -> T:
    """Call func until it succeeds, re-raising the last error when attempts run out.

    :param func: Zero-argument callable
    :param policy: Attempt ceiling and delay between attempts
    :param retry_on: Exception types that trigger another attempt
    :param sleep: Sleep function (injectable for tests)
    :param what: Description for debug logging
    :return: func's return value
    """
    for attempt in range(1, policy.attempts + 1):
        try:
            return func()
        except retry_on as e:
            if attempt == policy.attempts:
                raise
            delay = policy.delay_after(attempt)
            debug(f"Retrying {what} in {delay:g}s (attempt {attempt}/{policy.attempts}): {e}")
            sleep(delay)
    raise AssertionError("unreachable")


def poll(
    check: Callable[[], T | None],
    policy: RetryPolicy,
    *,
    sleep: Sleep = time.sleep,
    what: str = "condition",
) -> T:
    """Call check until it returns a value other than None.

    Exceptions raised by check propagate immediately, which is how callers
    fail fast on a state that can never become ready.

    :raises WaitTimeoutError: If check never returned a value within the policy
    """
    for attempt in range(1, policy.attempts + 1):
        result = check()
        if result is not None:
            return result
        debug(f"Waiting for {what} (attempt {attempt}/{policy.attempts})")
        if attempt < policy.attempts:
            sleep(policy.delay_after(attempt))
    raise WaitTimeoutError(
        f"Timeout waiting for {what} after {policy.attempts} attempts"
    )
