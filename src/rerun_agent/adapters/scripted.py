"""
Deterministic adapters driven by pre-recorded answers.

Used by the `simulate` command and by tests. Once a script is exhausted its
last answer repeats forever.
"""

import threading
from typing import Iterable, List, Sequence, TypeVar, Generic

from rerun_agent.logging import get_logger
from rerun_agent.state import JobStatus

logger = get_logger(__name__)

T = TypeVar("T")


class _Script(Generic[T]):
    """Thread-safe cursor over a list of answers."""

    def __init__(self, values: Sequence[T], default: T):
        self._values: List[T] = list(values) or [default]
        self._index = 0
        self._lock = threading.Lock()
        self.calls = 0

    def next(self) -> T:
        with self._lock:
            value = self._values[min(self._index, len(self._values) - 1)]
            self._index += 1
            self.calls += 1
            return value


def parse_statuses(raw: str) -> List[JobStatus]:
    """Parse a comma separated list like 'failed,active,success'."""
    statuses = []
    for part in raw.split(","):
        part = part.strip().lower()
        if part:
            statuses.append(JobStatus(part))
    return statuses


class ScriptedStatusOracle:
    """Status oracle that replays a fixed sequence of statuses."""

    def __init__(self, statuses: Iterable[JobStatus | str]):
        self._script = _Script([JobStatus(s) for s in statuses], JobStatus.UNKNOWN)

    @property
    def calls(self) -> int:
        return self._script.calls

    def status(self) -> JobStatus:
        status = self._script.next()
        logger.debug("Scripted status", status=status.value, call=self.calls)
        return status


class ScriptedActionTrigger:
    """Action trigger with scripted outcomes for trigger and confirm."""

    def __init__(
        self,
        trigger_results: Sequence[bool] = (True,),
        confirm_results: Sequence[bool] = (True,),
    ):
        self._triggers = _Script(list(trigger_results), True)
        self._confirms = _Script(list(confirm_results), True)

    @property
    def trigger_calls(self) -> int:
        return self._triggers.calls

    @property
    def confirm_calls(self) -> int:
        return self._confirms.calls

    def try_trigger(self) -> bool:
        result = self._triggers.next()
        logger.debug("Scripted trigger", result=result, call=self.trigger_calls)
        return result

    def try_confirm(self) -> bool:
        result = self._confirms.next()
        logger.debug("Scripted confirm", result=result, call=self.confirm_calls)
        return result
