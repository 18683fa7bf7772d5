"""
Unit tests for the cancellation scope and cooperative waits.
"""

import asyncio
import threading
import time

import pytest

from rerun_agent.safety.cancellation import (
    CancelScope,
    RunCancelled,
    async_wait_until,
    async_wait_with_cancel,
)


def run_async(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


class TestCancelScope:
    """Tests for CancelScope."""

    def test_initial_state(self):
        scope = CancelScope(epoch=3)

        assert scope.epoch == 3
        assert scope.cancelled is False
        assert scope.reason is None
        scope.check()

    def test_cancel_sets_reason(self):
        scope = CancelScope()

        assert scope.cancel("manual") is True
        assert scope.cancelled is True
        assert scope.reason == "manual"

    def test_cancel_is_idempotent(self):
        scope = CancelScope()

        scope.cancel("first")
        assert scope.cancel("second") is False
        assert scope.reason == "first"

    def test_check_raises(self):
        scope = CancelScope()
        scope.cancel("timed out")

        with pytest.raises(RunCancelled) as exc_info:
            scope.check()
        assert exc_info.value.reason == "timed out"

    def test_concurrent_cancel_single_winner(self):
        scope = CancelScope()
        results = []
        barrier = threading.Barrier(8)

        def worker(i):
            barrier.wait()
            results.append(scope.cancel(f"reason-{i}"))

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1


class TestAsyncWaits:
    """Tests for cooperative waits."""

    def test_wait_completes(self):
        scope = CancelScope()
        start = time.monotonic()

        run_async(async_wait_with_cancel(scope, 0.05, check_interval=0.01))

        assert time.monotonic() - start >= 0.05

    def test_wait_zero_duration(self):
        run_async(async_wait_with_cancel(CancelScope(), 0, check_interval=0.01))

    def test_wait_raises_when_already_cancelled(self):
        scope = CancelScope()
        scope.cancel("early")

        with pytest.raises(RunCancelled):
            run_async(async_wait_with_cancel(scope, 10, check_interval=0.01))

    def test_wait_observes_cancel_within_interval(self):
        scope = CancelScope()

        async def scenario():
            asyncio.get_running_loop().call_later(0.05, scope.cancel, "manual")
            start = time.monotonic()
            with pytest.raises(RunCancelled):
                await async_wait_with_cancel(scope, 10, check_interval=0.02)
            return time.monotonic() - start

        assert run_async(scenario()) < 0.5

    def test_wait_until_true(self):
        scope = CancelScope()
        answers = iter([False, False, True])

        assert run_async(async_wait_until(scope, lambda: next(answers), timeout=1, check_interval=0.01)) is True

    def test_wait_until_timeout(self):
        scope = CancelScope()

        assert run_async(async_wait_until(scope, lambda: False, timeout=0.05, check_interval=0.01)) is False

    def test_wait_until_async_predicate(self):
        scope = CancelScope()
        calls = []

        async def predicate():
            calls.append(1)
            return len(calls) >= 2

        assert run_async(async_wait_until(scope, predicate, timeout=1, check_interval=0.01)) is True
        assert len(calls) == 2

    def test_wait_until_cancelled(self):
        scope = CancelScope()

        async def scenario():
            asyncio.get_running_loop().call_later(0.03, scope.cancel, "manual")
            await async_wait_until(scope, lambda: False, check_interval=0.01)

        with pytest.raises(RunCancelled):
            run_async(scenario())
