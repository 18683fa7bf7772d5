"""
Tests for resilience module.
"""

from unittest.mock import MagicMock

import pytest

from rerun_agent.resilience import (
    HTTP_RETRY_POLICY,
    RetryExhaustedError,
    RetryPolicy,
    retry_sync_with_backoff,
)


class TransientError(Exception):
    pass


class FatalError(Exception):
    pass


class TestRetryPolicy:
    """Tests for RetryPolicy."""

    def test_exponential_delay(self):
        policy = RetryPolicy(initial_delay=1.0, multiplier=2.0, jitter=0, max_delay=100)

        assert policy.get_delay(0) == 1.0
        assert policy.get_delay(1) == 2.0
        assert policy.get_delay(3) == 8.0

    def test_max_delay(self):
        policy = RetryPolicy(initial_delay=1.0, multiplier=10.0, jitter=0, max_delay=5.0)

        assert policy.get_delay(5) == 5.0

    def test_jitter_bounds(self):
        policy = RetryPolicy(initial_delay=1.0, jitter=0.1)

        for _ in range(50):
            assert 0.9 <= policy.get_delay(0) <= 1.1

    def test_non_retryable_wins(self):
        policy = RetryPolicy(retryable_exceptions=(Exception,), non_retryable_exceptions=(FatalError,))

        assert policy.is_retryable(TransientError()) is True
        assert policy.is_retryable(FatalError()) is False

    def test_http_policy(self):
        assert HTTP_RETRY_POLICY.max_retries == 2
        assert HTTP_RETRY_POLICY.max_delay == 5.0


class TestRetrySyncWithBackoff:
    """Tests for retry_sync_with_backoff."""

    def test_success_first_try(self):
        func = MagicMock(return_value="ok")
        sleep = MagicMock()

        assert retry_sync_with_backoff(func, 1, key="v", sleep=sleep) == "ok"
        func.assert_called_once_with(1, key="v")
        sleep.assert_not_called()

    def test_retries_then_succeeds(self):
        func = MagicMock(side_effect=[TransientError(), TransientError(), "ok"])
        on_retry = MagicMock()
        sleep = MagicMock()
        policy = RetryPolicy(max_retries=3, initial_delay=0.5, jitter=0)

        result = retry_sync_with_backoff(func, policy=policy, on_retry=on_retry, sleep=sleep)

        assert result == "ok"
        assert func.call_count == 3
        assert on_retry.call_count == 2
        sleep.assert_any_call(0.5)
        sleep.assert_any_call(1.0)

    def test_exhausted(self):
        func = MagicMock(side_effect=TransientError("still down"))
        policy = RetryPolicy(max_retries=2, initial_delay=0, jitter=0)

        with pytest.raises(RetryExhaustedError) as exc_info:
            retry_sync_with_backoff(func, policy=policy, sleep=MagicMock())

        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.last_error, TransientError)
        assert func.call_count == 3

    def test_non_retryable_raises_immediately(self):
        func = MagicMock(side_effect=FatalError("bad request"))
        policy = RetryPolicy(retryable_exceptions=(TransientError,))

        with pytest.raises(FatalError):
            retry_sync_with_backoff(func, policy=policy, sleep=MagicMock())

        func.assert_called_once()

    def test_retry_after_hint(self):
        error = TransientError("slow down")
        error.retry_after = 2.5
        func = MagicMock(side_effect=[error, "ok"])
        sleep = MagicMock()
        policy = RetryPolicy(initial_delay=0.1, jitter=0, max_delay=10)

        assert retry_sync_with_backoff(func, policy=policy, sleep=sleep) == "ok"
        sleep.assert_called_once_with(2.5)


class TestPolicyHelpers:
    def test_retry_after_capped(self):
        error = TransientError()
        error.retry_after = 600
        policy = RetryPolicy(max_delay=5.0)

        assert policy.get_delay(0, error) == 5.0

    def test_with_retryable(self):
        policy = HTTP_RETRY_POLICY.with_retryable(TransientError)

        assert policy.retryable_exceptions == (TransientError,)
        assert policy.max_retries == HTTP_RETRY_POLICY.max_retries
        assert policy.is_retryable(FatalError()) is False
        assert policy.attempts == 3
