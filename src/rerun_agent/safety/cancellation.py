"""
Cancellation scope for a single controller run.

A scope combines:
- a monotonic cancel flag (false -> true, never reset mid-run)
- the run's epoch, so deferred timers can tell whether they still apply
- cooperative waits that re-check the flag at a fixed granularity
"""

import asyncio
import threading
import time
from typing import Any, Callable, Optional

from rerun_agent.logging import get_logger

logger = get_logger(__name__)


class RunCancelled(Exception):
    """Raised when a cancellation is observed at a suspension point."""

    def __init__(self, reason: Optional[str] = None):
        self.reason = reason
        super().__init__(f"Run cancelled: {reason or 'unknown'}")


class CancelScope:
    """
    Cancellation context tied to one run's lifetime.

    Safe to trigger from any thread: the flag is a threading.Event and the
    trigger path is serialized by a lock, so only the first caller wins.
    """

    def __init__(self, epoch: int = 0):
        self.epoch = epoch

        self._cancelled = threading.Event()
        self._lock = threading.Lock()
        self._reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def check(self) -> None:
        """
        Raise if the scope has been cancelled.

        Raises:
            RunCancelled: If cancel() was called
        """
        if self._cancelled.is_set():
            raise RunCancelled(self._reason)

    def cancel(self, reason: str) -> bool:
        """
        Cancel the scope.

        Returns:
            True if this call performed the cancellation, False if the scope
            was already cancelled.
        """
        with self._lock:
            if self._cancelled.is_set():
                return False

            self._reason = reason
            self._cancelled.set()

        logger.debug("Cancel scope triggered", epoch=self.epoch, reason=reason)
        return True



async def async_wait_with_cancel(
    scope: CancelScope,
    duration: float,
    check_interval: float = 1.0,
) -> None:
    """
    Sleep for duration while checking the scope.

    Use instead of asyncio.sleep() for every wait inside a run.

    Raises:
        RunCancelled: If the scope is cancelled during the wait
    """
    end_time = time.monotonic() + duration
    scope.check()
    while True:
        remaining = end_time - time.monotonic()
        if remaining <= 0:
            break
        await asyncio.sleep(min(check_interval, remaining))
        scope.check()


async def async_wait_until(
    scope: CancelScope,
    predicate: Callable[[], Any],
    timeout: Optional[float] = None,
    check_interval: float = 1.0,
) -> bool:
    """
    Poll predicate until it returns True, the timeout elapses or the scope
    is cancelled.

    The predicate may be a plain callable or a coroutine function.

    Returns:
        True if the predicate was satisfied, False on timeout

    Raises:
        RunCancelled: If the scope is cancelled while waiting
    """
    deadline = time.monotonic() + timeout if timeout is not None else None

    while True:
        scope.check()

        result = predicate()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return True

        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            await asyncio.sleep(min(check_interval, remaining))
        else:
            await asyncio.sleep(check_interval)
