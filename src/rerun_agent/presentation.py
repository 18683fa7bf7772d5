"""
Maps snapshots to an indicator colour and a human-readable status line.

Purely derived from the snapshot; nothing here feeds back into the controller.
"""

from dataclasses import dataclass
from enum import Enum

from rerun_agent.state import JobStatus, RunPhase, StateSnapshot

DEFAULT_TITLE = "Rerun failed jobs"


class Indicator(str, Enum):
    """Indicator colours, one per terminal outcome plus idle and running."""

    DEFAULT = "default"
    BLUE = "blue"
    GREEN = "green"
    RED = "red"


@dataclass(frozen=True)
class StatusLine:
    indicator: Indicator
    title: str


def describe(snapshot: StateSnapshot) -> StatusLine:
    """Derive the indicator and status line for a snapshot."""
    phase = snapshot.phase
    elapsed = f"{snapshot.elapsed_seconds:.2f}s"

    if phase == RunPhase.RUNNING:
        return StatusLine(
            Indicator.BLUE,
            "Periodically scanning for the rerun action. Toggle to cancel. "
            f"(retries: {snapshot.retry_count})",
        )

    if phase == RunPhase.FINISHED and snapshot.status == JobStatus.SUCCESS:
        return StatusLine(
            Indicator.GREEN,
            f"Job succeeded. (retries: {snapshot.retry_count}, elapsed: {elapsed})",
        )

    if phase in (RunPhase.FINISHED, RunPhase.CANCELLED):
        details = f"retries: {snapshot.retry_count}, elapsed: {elapsed}"
        if snapshot.cancellation_reason:
            details += f", reason: {snapshot.cancellation_reason}"
        return StatusLine(Indicator.RED, f"Job failed, was cancelled or timed out. ({details})")

    return StatusLine(Indicator.DEFAULT, DEFAULT_TITLE)
