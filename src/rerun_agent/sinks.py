"""
State sinks - where emitted snapshots go.

The controller calls emit() for every observable transition, in order, and
treats delivery as fire-and-forget. A sink that raises only loses its own
delivery; FanoutSink isolates its members from one another the same way.
"""

import json
from pathlib import Path
from typing import Callable, Iterable, List, Optional

from filelock import FileLock, Timeout

from rerun_agent.adapters.base import StateSink
from rerun_agent.logging import get_logger
from rerun_agent.presentation import describe
from rerun_agent.state import StateSnapshot

logger = get_logger(__name__)


class LoggingSink:
    """Logs each snapshot with its derived status line."""

    def __init__(self, event: str = "State update"):
        self.event = event

    def emit(self, snapshot: StateSnapshot) -> None:
        line = describe(snapshot)
        logger.info(
            self.event,
            phase=snapshot.phase.value,
            status=snapshot.status.value,
            retries=snapshot.retry_count,
            indicator=line.indicator.value,
            title=line.title,
        )


class JsonlSnapshotSink:
    """
    Append-only journal of emitted snapshots, one JSON object per line.

    Read back by the `history` command; never used to resume a run. Several
    agent processes may share one journal, so appends hold a file lock. A
    contended lock drops the line after lock_timeout rather than stalling
    the control loop.
    """

    LOCK_TIMEOUT = 1.0  # seconds

    def __init__(self, path: Path, lock_timeout: float = LOCK_TIMEOUT):
        self.path = Path(path)
        self.lock_timeout = lock_timeout
        self.lock_path = self.path.with_name(self.path.name + ".lock")

    def emit(self, snapshot: StateSnapshot) -> None:
        line = snapshot.to_json()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with FileLock(self.lock_path, timeout=self.lock_timeout):
                with open(self.path, "a") as f:
                    f.write(line + "\n")
        except Timeout:
            logger.warning("Lock timeout during journal append", path=str(self.path))


def load_snapshots(path: Path, run_id: Optional[str] = None) -> List[StateSnapshot]:
    """
    Read a snapshot journal.

    Malformed lines are skipped with a debug log; an absent journal yields
    an empty list.
    """
    path = Path(path)
    if not path.exists():
        return []

    snapshots = []
    with open(path, "r") as f:
        for lineno, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                snapshot = StateSnapshot.from_dict(json.loads(line))
            except (ValueError, KeyError, TypeError) as e:
                logger.debug("Skipping malformed journal line", line=lineno, error=str(e))
                continue
            if run_id is None or snapshot.run_id == run_id:
                snapshots.append(snapshot)
    return snapshots


class CallbackSink:
    """Adapts a plain callable to the sink contract."""

    def __init__(self, callback: Callable[[StateSnapshot], None]):
        self.callback = callback

    def emit(self, snapshot: StateSnapshot) -> None:
        self.callback(snapshot)


class FanoutSink:
    """Delivers each snapshot to several sinks in registration order."""

    def __init__(self, sinks: Iterable[StateSink] = ()):
        self.sinks: List[StateSink] = list(sinks)

    def add(self, sink: StateSink) -> None:
        self.sinks.append(sink)

    def emit(self, snapshot: StateSnapshot) -> None:
        for sink in self.sinks:
            try:
                sink.emit(snapshot)
            except Exception as e:
                logger.warning("State sink failed", sink=type(sink).__name__, error=str(e))
