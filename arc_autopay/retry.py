"""
Polling with a fixed retry budget.

Generic "poll until done or give up" used by the attestation poller and any
other wait on an external service whose latency is unbounded.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """How long and how often to poll.

    The total wait is roughly ``interval * (max_attempts - 1)``: no sleep
    follows the last attempt.

    Example:

    .. code-block:: python

        # Production attestation polling: every 5 s, 5 minutes total
        policy = RetryPolicy(interval=5.0, max_attempts=60)

        # Fast-fail for tests
        policy = RetryPolicy.create_test_policy()
    """

    #: Seconds to sleep between attempts
    interval: float = 5.0

    #: Attempts before giving up
    max_attempts: int = 60

    def __post_init__(self):
        assert self.interval >= 0, f"Negative interval: {self.interval}"
        assert self.max_attempts >= 1, f"Need at least one attempt: {self.max_attempts}"

    @property
    def budget(self) -> float:
        """Total seconds spent sleeping when every attempt fails."""
        return self.interval * (self.max_attempts - 1)

    @classmethod
    def create_test_policy(cls, max_attempts: int = 3) -> "RetryPolicy":
        """Create a policy with no sleeping for unit tests."""
        return cls(interval=0.0, max_attempts=max_attempts)


#: Attestation polling defaults: 5 second interval, 60 attempts
DEFAULT_ATTESTATION_POLICY = RetryPolicy(interval=5.0, max_attempts=60)


class PollTimeout(Exception):
    """All attempts of :py:func:`poll_until` were used up."""

    def __init__(self, message: str, attempts: int, last_value=None):
        super().__init__(message)
        self.attempts = attempts
        self.last_value = last_value


@dataclass(slots=True)
class PollAttempt(Generic[T]):
    """Book-keeping passed to the ``on_attempt`` hook."""

    #: 1-based attempt number
    attempt: int

    #: Value returned by ``fetch``, ``None`` if not available yet
    value: T | None


def poll_until(
    fetch: Callable[[int], T | None],
    is_done: Callable[[T], bool],
    policy: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep,
    describe: str = "poll",
    on_attempt: Callable[[PollAttempt[T]], None] | None = None,
) -> T:
    """Call ``fetch`` until it returns a value ``is_done`` accepts.

    :param fetch:
        Called with the 1-based attempt number. Return ``None`` for "not yet,
        retry". Exceptions are not caught: ``fetch`` decides which errors are
        transient.

    :param is_done:
        Success predicate for non-``None`` values.

    :param policy:
        Interval and attempt budget.

    :param sleep:
        Injectable for tests.

    :param describe:
        Label for log messages.

    :param on_attempt:
        Optional progress hook, called after every attempt.

    :return:
        First accepted value

    :raise PollTimeout:
        If ``policy.max_attempts`` attempts did not produce an accepted value
    """
    last_value = None

    for attempt in range(1, policy.max_attempts + 1):
        value = fetch(attempt)

        if on_attempt is not None:
            on_attempt(PollAttempt(attempt=attempt, value=value))

        if value is not None:
            last_value = value
            if is_done(value):
                logger.debug("%s: done after %d attempts", describe, attempt)
                return value

        if attempt < policy.max_attempts:
            sleep(policy.interval)

    raise PollTimeout(
        f"{describe}: not done after {policy.max_attempts} attempts ({policy.budget:.0f}s)",
        attempts=policy.max_attempts,
        last_value=last_value,
    )
