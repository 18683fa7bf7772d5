"""
Collaborator contracts consumed and produced by the retry controller.
"""

from typing import Protocol, runtime_checkable

from rerun_agent.state import JobStatus, StateSnapshot


@runtime_checkable
class StatusOracle(Protocol):
    """
    Read-only probe reporting the classified status of the monitored job.

    Must be cheap and side-effect free. Returning JobStatus.UNKNOWN is the
    expected answer when the job cannot be classified; it is not an error.
    """

    def status(self) -> JobStatus:
        ...


@runtime_checkable
class ActionTrigger(Protocol):
    """
    Best-effort write action that asks the job to rerun.

    Both methods return False when the action could not be located or
    activated.
    """

    def try_trigger(self) -> bool:
        ...

    def try_confirm(self) -> bool:
        ...


@runtime_checkable
class StateSink(Protocol):
    """Receives every snapshot the controller emits, in emission order."""

    def emit(self, snapshot: StateSnapshot) -> None:
        ...
