"""
Run state and the snapshot contract sent to state sinks.
"""

import json
import time
import uuid
from dataclasses import dataclass, asdict, fields
from enum import Enum
from typing import Optional, Any


def now_ms() -> int:
    """Current wall-clock time as integer epoch milliseconds."""
    return int(time.time() * 1000)


class JobStatus(str, Enum):
    """Classified status of the monitored job, as reported by a status oracle."""

    SUCCESS = "success"
    FAILED = "failed"
    ACTIVE = "active"
    UNKNOWN = "unknown"


class RunPhase(str, Enum):
    """Controller lifecycle phases."""

    IDLE = "idle"
    RUNNING = "running"
    FINISHED = "finished"
    CANCELLED = "cancelled"


@dataclass
class RunState:
    """
    Mutable record of one run, owned by the controller.

    Only the controller writes to it. ``reset()`` replaces every field so
    nothing leaks from a previous run into the next one.
    """

    run_id: Optional[str] = None
    start_time: Optional[int] = None  # epoch ms
    end_time: Optional[int] = None  # epoch ms, set once the run terminated
    retry_count: int = 0
    max_retry_count: int = 0
    cancelled: bool = False
    cancellation_reason: Optional[str] = None
    cancellation_epoch: int = 0
    last_status: JobStatus = JobStatus.UNKNOWN

    def reset(self, max_retry_count: int) -> None:
        """Start a fresh run: new id, new epoch, everything else cleared."""
        self.run_id = uuid.uuid4().hex[:12]
        self.start_time = None
        self.end_time = None
        self.retry_count = 0
        self.max_retry_count = max_retry_count
        self.cancelled = False
        self.cancellation_reason = None
        self.cancellation_epoch += 1
        self.last_status = JobStatus.UNKNOWN

    @property
    def running(self) -> bool:
        return self.start_time is not None and self.end_time is None

    @property
    def finished(self) -> bool:
        return self.end_time is not None

    @property
    def phase(self) -> RunPhase:
        if self.start_time is None:
            return RunPhase.IDLE
        if self.end_time is None:
            return RunPhase.RUNNING
        if self.cancelled:
            return RunPhase.CANCELLED
        return RunPhase.FINISHED

    def elapsed_ms(self, now: Optional[int] = None) -> int:
        """Elapsed run time; -1 if the run never started."""
        if self.start_time is None:
            return -1
        end = self.end_time if self.end_time is not None else (now if now is not None else now_ms())
        return end - self.start_time

    def snapshot(self) -> "StateSnapshot":
        """Point-in-time copy for sinks and queries."""
        return StateSnapshot(
            running=self.running,
            finished=self.finished,
            cancelled=self.cancelled,
            status=self.last_status,
            start_time_ms=self.start_time or 0,
            end_time_ms=self.end_time or 0,
            retry_count=self.retry_count,
            max_retry_count=self.max_retry_count,
            cancellation_reason=self.cancellation_reason,
            elapsed_ms=self.elapsed_ms(),
            run_id=self.run_id,
        )


@dataclass(frozen=True)
class StateSnapshot:
    """
    Immutable projection of a RunState.

    Timestamps are integer epoch milliseconds with 0 meaning "unset", the
    status is serialized as its exact string literal.
    """

    running: bool
    finished: bool
    cancelled: bool
    status: JobStatus
    start_time_ms: int
    end_time_ms: int
    retry_count: int
    max_retry_count: int = 0
    cancellation_reason: Optional[str] = None
    elapsed_ms: int = -1
    run_id: Optional[str] = None

    @property
    def phase(self) -> RunPhase:
        if self.running:
            return RunPhase.RUNNING
        if self.cancelled:
            return RunPhase.CANCELLED
        if self.finished:
            return RunPhase.FINISHED
        return RunPhase.IDLE

    @property
    def elapsed_seconds(self) -> float:
        return max(self.elapsed_ms, 0) / 1000.0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StateSnapshot":
        """Create from dictionary, ignoring keys this version does not know."""
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values["status"] = JobStatus(values["status"])
        return cls(**values)

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, raw: str) -> "StateSnapshot":
        return cls.from_dict(json.loads(raw))

    @classmethod
    def idle(cls) -> "StateSnapshot":
        """Snapshot of a controller that has never started."""
        return RunState().snapshot()
