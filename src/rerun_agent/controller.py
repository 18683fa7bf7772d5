"""
RetryController - the poll/act/confirm loop that reruns a failed job.

Loop flow (while not cancelled and retries < budget):
1. Query the status oracle
2. If FAILED -> trigger the rerun action, wait briefly, confirm it
3. Confirmed -> count the retry, emit a snapshot, wait for ACTIVE
4. Sleep the iteration delay (cancellable)
5. Re-query -> SUCCESS ends the run

After the loop a trailing ACTIVE status is drained so the last retry is not
reported as finished while the job is still processing it.
"""

import asyncio
import inspect
import threading
import time
from collections import deque
from typing import Any, Callable, Deque, Optional, Tuple

from rerun_agent.adapters.base import ActionTrigger, StateSink, StatusOracle
from rerun_agent.config import ControllerConfig
from rerun_agent.logging import bind_run, get_logger, unbind_run
from rerun_agent.metrics import RunMetrics
from rerun_agent.safety.cancellation import (
    CancelScope,
    RunCancelled,
    async_wait_until,
    async_wait_with_cancel,
)
from rerun_agent.state import JobStatus, RunPhase, RunState, StateSnapshot, now_ms

logger = get_logger(__name__)

TIMEOUT_REASON = "timed out"


class RetryController:
    """
    Owns one monitored job: lifecycle state, retry budget, timeout timer and
    the control loop.

    start() runs on an asyncio event loop. cancel() and current_state() may
    be called from any thread. Every state write happens under one lock and
    queues its snapshot there; sinks are called after the lock is released,
    in queue order, so a slow sink never holds up a cancellation taking
    effect.
    """

    def __init__(
        self,
        config: ControllerConfig,
        oracle: StatusOracle,
        trigger: ActionTrigger,
        sink: Optional[StateSink] = None,
        metrics: Optional[RunMetrics] = None,
    ):
        self.config = config
        self.oracle = oracle
        self.trigger = trigger
        self.sink = sink
        self._metrics = metrics or RunMetrics()

        self._state = RunState()
        self._lock = threading.RLock()
        self._scope: Optional[CancelScope] = None
        self._pending: Optional[Tuple[CancelScope, asyncio.TimerHandle]] = None

        # Snapshots are queued under _lock and delivered outside it, in order.
        self._outbox: Deque[StateSnapshot] = deque()
        self._delivery = threading.Lock()

    @property
    def metrics(self) -> RunMetrics:
        return self._metrics

    @property
    def running(self) -> bool:
        with self._lock:
            return self._state.running

    @property
    def phase(self) -> RunPhase:
        with self._lock:
            return self._state.phase

    @property
    def run_id(self) -> Optional[str]:
        return self._state.run_id

    def current_state(self) -> StateSnapshot:
        """Point-in-time snapshot; never queries the oracle."""
        with self._lock:
            return self._state.snapshot()

    async def start(self) -> StateSnapshot:
        """
        Run until success, budget exhaustion, timeout or cancellation.

        Returns the final snapshot. Calling start() while a run is in
        progress logs a warning and returns the current snapshot.
        """
        if not self.begin():
            return self.current_state()
        return await self.run_begun()

    def begin(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> bool:
        """
        Synchronous half of start(): reset, arm the timeout, emit the
        initial snapshot.

        Once this returns True the controller reports running, so a host
        can schedule run_begun() as a task and still route an immediate
        second toggle to cancel(). Returns False if a run is in progress.
        """
        loop = loop or asyncio.get_running_loop()
        with self._lock:
            if self._state.running:
                logger.warning("Run already in progress, ignoring start", run_id=self._state.run_id)
                return False

            self._state.reset(self.config.max_retry_count)
            self._state.start_time = now_ms()
            scope = CancelScope(epoch=self._state.cancellation_epoch)
            self._scope = scope
            run_id = self._state.run_id

            self._metrics.run_start(run_id, self._state.max_retry_count)
            timeout_handle = loop.call_later(self.config.timeout_seconds, self._on_timeout, scope.epoch)
            self._pending = (scope, timeout_handle)

            logger.info(
                "Run started",
                run_id=run_id,
                max_retry_count=self._state.max_retry_count,
                iteration_delay=self.config.iteration_delay_seconds,
                timeout=self.config.timeout_seconds,
            )
            self._publish(self._state.snapshot())
        self._flush()
        return True

    async def run_begun(self) -> StateSnapshot:
        """Drive the run prepared by begin() to its end; returns the final snapshot."""
        with self._lock:
            if self._pending is None:
                raise RuntimeError("run_begun() called without a successful begin()")
            scope, timeout_handle = self._pending
            self._pending = None

        bind_run(self._state.run_id)
        try:
            await self._run_loop(scope)
            await self._drain(scope)
        except RunCancelled as e:
            logger.info("Run interrupted", reason=e.reason)
        except asyncio.CancelledError:
            self._cancel("run task cancelled", scope.epoch)
            raise
        finally:
            timeout_handle.cancel()
            final = self._finish(scope)
            unbind_run()

        return final

    def cancel(self, reason: str) -> bool:
        """
        Cancel the active run.

        Idempotent: returns False (and does nothing) if no run is active or
        it was already cancelled. Otherwise stamps the end time, emits the
        terminal snapshot and wakes every pending wait.
        """
        return self._cancel(reason, None)

    def _cancel(self, reason: str, epoch: Optional[int]) -> bool:
        with self._lock:
            state = self._state
            if epoch is not None and epoch != state.cancellation_epoch:
                logger.debug("Ignoring cancel for a superseded run", epoch=epoch, current=state.cancellation_epoch)
                return False
            if not state.running or state.cancelled:
                logger.debug("Nothing to cancel", phase=state.phase.value, reason=reason)
                return False

            state.cancelled = True
            state.cancellation_reason = reason
            state.end_time = now_ms()

            if self._scope is not None:
                self._scope.cancel(reason)

            logger.info("Run cancelled", reason=reason, retries=state.retry_count)
            self._metrics.cancelled(reason)
            self._publish(state.snapshot())
        self._flush()
        return True

    def _on_timeout(self, epoch: int) -> None:
        """Timer callback; a callback armed by an earlier run is a no-op."""
        with self._lock:
            if epoch != self._state.cancellation_epoch or not self._state.running:
                logger.debug("Stale timeout ignored", epoch=epoch)
                return
            logger.warning("Timeout reached, cancelling", timeout=self.config.timeout_seconds)
        self._cancel(TIMEOUT_REASON, epoch)

    def _finish(self, scope: CancelScope) -> StateSnapshot:
        """Stamp the end time unless cancel() already did; emit once."""
        with self._lock:
            state = self._state
            if state.cancellation_epoch == scope.epoch and state.running:
                state.end_time = now_ms()
                self._publish(state.snapshot())

            logger.info(
                "Run ended",
                phase=state.phase.value,
                status=state.last_status.value,
                retries=state.retry_count,
                elapsed=f"{state.elapsed_ms() / 1000.0:.2f}s",
                reason=state.cancellation_reason,
            )
            self._metrics.run_end(state.phase.value, state.retry_count, state.cancellation_reason)
            final = state.snapshot()
        self._flush()
        return final


    async def _run_loop(self, scope: CancelScope) -> None:
        cfg = self.config

        while not scope.cancelled and self._state.retry_count < self._state.max_retry_count:
            status = await self._query_status(scope)

            attempted = False
            confirmed = False
            if status == JobStatus.FAILED:
                attempted = await self._trigger(scope)
                if attempted:
                    confirmed = await self._confirm(scope)

            if status == JobStatus.UNKNOWN or (status == JobStatus.FAILED and not attempted):
                reason = "status unknown" if status == JobStatus.UNKNOWN else "rerun action not found"
                logger.warning("Unable to detect and activate the rerun action", reason=reason)
                self._metrics.detection_warning(reason)

            if confirmed:
                became_active = await async_wait_until(
                    scope,
                    self._is_active,
                    timeout=cfg.post_action_settle_seconds,
                    check_interval=cfg.poll_interval_seconds,
                )
                if not became_active:
                    logger.info("Job did not show as active within the settle window")

            await async_wait_with_cancel(scope, cfg.iteration_delay_seconds, cfg.poll_interval_seconds)

            if await self._query_status(scope) == JobStatus.SUCCESS:
                logger.info("Detected that the job completed successfully")
                return

        if not scope.cancelled:
            logger.info("Retry budget exhausted", retries=self._state.retry_count)

    async def _drain(self, scope: CancelScope) -> None:
        """Wait for a trailing ACTIVE status to settle; skipped once cancelled."""
        if scope.cancelled or self._state.last_status != JobStatus.ACTIVE:
            return
        logger.info("Last retry is still running, waiting for it to finish")
        await async_wait_until(
            scope,
            self._is_not_active,
            check_interval=self.config.poll_interval_seconds,
        )

    async def _trigger(self, scope: CancelScope) -> bool:
        triggered = bool(await self._call(self.trigger.try_trigger, False, "trigger"))
        self._metrics.trigger_attempt(triggered)
        scope.check()
        return triggered

    async def _confirm(self, scope: CancelScope) -> bool:
        await async_wait_with_cancel(scope, self.config.confirm_delay_seconds, self.config.poll_interval_seconds)

        confirmed = bool(await self._call(self.trigger.try_confirm, False, "confirm"))
        scope.check()
        if not confirmed:
            logger.warning("Activated the rerun action but could not confirm it")
            self._metrics.confirm_failure()
            return False

        with self._lock:
            scope.check()
            self._state.retry_count += 1
            retries = self._state.retry_count
            logger.info("Executing retry", retry=retries, max_retry_count=self._state.max_retry_count)
            self._metrics.retry_submitted(retries)
            self._publish(self._state.snapshot())
        self._flush()
        return True

    async def _query_status(self, scope: CancelScope) -> JobStatus:
        started = time.monotonic()
        raw = await self._call(self.oracle.status, JobStatus.UNKNOWN, "status")
        try:
            status = JobStatus(raw)
        except ValueError:
            logger.warning("Oracle returned an unrecognized status", value=repr(raw))
            status = JobStatus.UNKNOWN

        with self._lock:
            scope.check()
            self._state.last_status = status
        self._metrics.status_poll(status.value, int((time.monotonic() - started) * 1000))
        return status

    async def _is_active(self) -> bool:
        return await self._query_status(self._scope) == JobStatus.ACTIVE

    async def _is_not_active(self) -> bool:
        return await self._query_status(self._scope) != JobStatus.ACTIVE

    async def _call(self, func: Callable[[], Any], default: Any, operation: str) -> Any:
        """
        Invoke an oracle or trigger method without blocking the event loop.

        Exceptions degrade to the default answer so a misbehaving adapter
        never ends the run.
        """
        try:
            if inspect.iscoroutinefunction(func):
                return await func()
            result = await asyncio.to_thread(func)
            if inspect.isawaitable(result):
                result = await result
            return result
        except Exception as e:
            logger.warning("Adapter call failed", operation=operation, error=str(e), error_type=type(e).__name__)
            self._metrics.adapter_error(operation, str(e))
            return default

    def _publish(self, snapshot: StateSnapshot) -> None:
        """Queue a snapshot; caller holds _lock so queue order is state order."""
        self._outbox.append(snapshot)

    def _flush(self) -> None:
        """
        Deliver queued snapshots; call without holding _lock.

        One thread delivers at a time. A thread that finds delivery busy
        leaves its snapshot to the current deliverer, which re-checks the
        queue after releasing.
        """
        while self._outbox:
            if not self._delivery.acquire(blocking=False):
                return
            try:
                while self._outbox:
                    self._emit(self._outbox.popleft())
            finally:
                self._delivery.release()

    def _emit(self, snapshot: StateSnapshot) -> None:
        """Deliver a snapshot; sink failures are logged and swallowed."""
        if self.sink is None:
            return
        try:
            self.sink.emit(snapshot)
        except Exception as e:
            logger.warning("State sink failed", sink=type(self.sink).__name__, error=str(e))
            self._metrics.sink_failure(type(self.sink).__name__, str(e))
