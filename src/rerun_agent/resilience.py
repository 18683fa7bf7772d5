"""
Retry policies for transient failures in external services.

The controller itself never retries an external call; its loop already polls
on a fixed cadence. These policies cover the short, transport-level retries
adapters make inside a single oracle or trigger call.
"""

import random
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Optional, Tuple, Type, TypeVar

from rerun_agent.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff with jitter.

    An error carrying a `retry_after` attribute (seconds, e.g. parsed from an
    HTTP Retry-After header) overrides the computed delay, capped at
    max_delay.
    """

    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 60.0
    multiplier: float = 2.0
    jitter: float = 0.1  # fraction of the delay, applied both ways

    retryable_exceptions: Tuple[Type[BaseException], ...] = (Exception,)
    non_retryable_exceptions: Tuple[Type[BaseException], ...] = ()

    @property
    def attempts(self) -> int:
        return self.max_retries + 1

    def get_delay(self, attempt: int, error: Optional[BaseException] = None) -> float:
        """Delay before retry number attempt + 1."""
        hinted = getattr(error, "retry_after", None)
        if hinted is not None:
            return max(0.0, min(float(hinted), self.max_delay))

        base = min(self.initial_delay * (self.multiplier ** attempt), self.max_delay)
        spread = base * self.jitter
        return max(0.0, base + random.uniform(-spread, spread))

    def is_retryable(self, error: BaseException) -> bool:
        if isinstance(error, self.non_retryable_exceptions):
            return False
        return isinstance(error, self.retryable_exceptions)

    def with_retryable(self, *exceptions: Type[BaseException]) -> "RetryPolicy":
        """Copy of this policy that retries only the given exception types."""
        return replace(self, retryable_exceptions=tuple(exceptions))


class RetryExhaustedError(Exception):
    """Raised when every attempt failed with a retryable error."""

    def __init__(self, attempts: int, last_error: Optional[Exception] = None):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Gave up after {attempts} attempts: {last_error}")


def retry_sync_with_backoff(
    func: Callable[..., T],
    *args: Any,
    policy: Optional[RetryPolicy] = None,
    on_retry: Optional[Callable[[int, Exception], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
    **kwargs: Any,
) -> T:
    """
    Call func(*args, **kwargs), retrying retryable errors.

    Args:
        func: Function to call
        policy: Retry policy (defaults to RetryPolicy())
        on_retry: Called with (retry number, error) before each sleep
        sleep: Sleep function, replaceable in tests

    Raises:
        RetryExhaustedError: If the last allowed attempt failed too
        Exception: The original error if it is not retryable
    """
    policy = policy or RetryPolicy()
    attempt = 0

    while True:
        try:
            return func(*args, **kwargs)
        except Exception as e:
            if not policy.is_retryable(e):
                raise
            if attempt >= policy.max_retries:
                raise RetryExhaustedError(policy.attempts, e) from e

            delay = policy.get_delay(attempt, e)
            attempt += 1
            logger.warning(
                "Transient failure, retrying",
                attempt=attempt,
                max_retries=policy.max_retries,
                delay=round(delay, 3),
                error=str(e),
            )
            if on_retry:
                on_retry(attempt, e)
            sleep(delay)


# Short retries for a single REST call made from inside the control loop.
HTTP_RETRY_POLICY = RetryPolicy(
    max_retries=2,
    initial_delay=0.5,
    max_delay=5.0,
)
