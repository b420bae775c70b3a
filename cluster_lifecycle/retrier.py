"""Bounded retry with pluggable backoff policies.

A policy is a plain callable ``policy(attempt, last_error) -> (retry, delay)``
where ``attempt`` counts the calls made so far (starting at 1) and ``delay``
is in seconds. The retrier itself keeps no state between ``retry`` calls, so
one instance can be shared by every step of a workflow. Each call runs on a
fresh ``tenacity.Retrying`` whose ``RetryCallState`` tracks the attempt
count, elapsed time and last error.
"""

import math
import threading
import time
from collections.abc import Callable
from typing import TypeVar

from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    stop_after_delay,
    stop_any,
)

from cluster_lifecycle.exceptions import RetryCancelledError, RetryExhaustedError
from cluster_lifecycle.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

RetryPolicy = Callable[[int, BaseException | None], tuple[bool, float]]


def zero_wait_policy(_attempt: int, _error: BaseException | None) -> tuple[bool, float]:
    """Retry immediately until the timeout is hit."""
    return True, 0.0


def fixed_interval_policy(interval: float) -> RetryPolicy:
    """Retry every ``interval`` seconds until the timeout is hit."""

    def policy(_attempt: int, _error: BaseException | None) -> tuple[bool, float]:
        return True, interval

    return policy


def max_retries_policy(max_retries: int, backoff: float) -> RetryPolicy:
    """Allow ``max_retries`` calls in total, sleeping ``backoff`` between them."""

    def policy(attempt: int, _error: BaseException | None) -> tuple[bool, float]:
        return attempt < max_retries, backoff

    return policy


class Retrier:
    """Runs an operation until it succeeds, the policy stops, or time runs out."""

    def __init__(
        self,
        timeout: float = math.inf,
        policy: RetryPolicy | None = None,
        cancel_event: threading.Event | None = None,
        description: str = "operation",
        max_attempts: int | None = None,
    ):
        """Initialize the retrier.

        Args:
            timeout: Overall wall-clock limit in seconds
            policy: Backoff policy, defaults to retrying with no wait
            cancel_event: Event that aborts the loop and interrupts sleeps when set
            description: Name of the wait, used in exhaustion errors
            max_attempts: Hard cap on calls, on top of whatever the policy allows
        """
        self.timeout = timeout
        self.policy = policy or zero_wait_policy
        self.cancel_event = cancel_event
        self.description = description
        self.max_attempts = max_attempts

    @classmethod
    def with_max_retries(
        cls,
        max_retries: int,
        backoff: float,
        cancel_event: threading.Event | None = None,
        description: str = "operation",
    ) -> "Retrier":
        """Build a retrier limited by attempt count instead of time."""
        return cls(
            timeout=math.inf,
            policy=max_retries_policy(max_retries, backoff),
            cancel_event=cancel_event,
            description=description,
            max_attempts=max_retries,
        )

    def retry(self, fn: Callable[[], T], description: str | None = None) -> T:
        """Call ``fn`` until it returns without raising.

        Args:
            fn: Operation to run, safe to call more than once
            description: Overrides the retrier description for this call

        Returns:
            Whatever ``fn`` returned on its successful call

        Raises:
            RetryExhaustedError: The policy stopped or the timeout elapsed
            RetryCancelledError: The cancel event was set
        """
        description = description or self.description
        last_error: list[BaseException | None] = [None]

        def check_cancelled(retry_state: RetryCallState) -> None:
            if self.cancel_event is not None and self.cancel_event.is_set():
                raise RetryCancelledError(
                    f"cancelled while waiting for {description} "
                    f"after {retry_state.attempt_number - 1} attempts"
                ) from last_error[0]

        def before_sleep(retry_state: RetryCallState) -> None:
            last_error[0] = retry_state.outcome.exception()
            logger.debug(
                f"Retrying {description} in {retry_state.next_action.sleep:.1f}s "
                f"(attempt {retry_state.attempt_number}): {last_error[0]}"
            )

        def sleep(delay: float) -> None:
            if delay <= 0:
                return
            if self.cancel_event is None:
                time.sleep(delay)
            elif self.cancel_event.wait(delay):
                raise RetryCancelledError(
                    f"cancelled while waiting for {description}"
                ) from last_error[0]

        retrying = Retrying(
            stop=self._stop(),
            wait=self._wait,
            retry=retry_if_exception_type(Exception),
            before=check_cancelled,
            before_sleep=before_sleep,
            sleep=sleep,
        )

        try:
            return retrying(fn)
        except RetryError as e:
            error = e.last_attempt.exception()
            attempts = e.last_attempt.attempt_number
            raise RetryExhaustedError(
                f"retries exhausted waiting for {description} after {attempts} attempts",
                last_error=error,
                attempts=attempts,
            ) from error

    def _stop(self):
        stops = [self._policy_stop]
        if self.max_attempts is not None:
            stops.append(stop_after_attempt(self.max_attempts))
        if self.timeout != math.inf:
            stops.append(stop_after_delay(self.timeout))
        return stop_any(*stops)

    def _policy_stop(self, retry_state: RetryCallState) -> bool:
        should_retry, _ = self.policy(
            retry_state.attempt_number, retry_state.outcome.exception()
        )
        return not should_retry

    def _wait(self, retry_state: RetryCallState) -> float:
        _, delay = self.policy(retry_state.attempt_number, retry_state.outcome.exception())
        return delay
