"""
Terminal display using Rich.

Renders snapshots as a status panel. ConsoleSink prints one line per
snapshot; LiveStatusSink keeps a single panel refreshed in place.
"""

import threading
from datetime import datetime
from typing import Optional

from rich.console import Console
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from rerun_agent.logging import get_logger
from rerun_agent.presentation import Indicator, describe
from rerun_agent.state import RunPhase, StateSnapshot

logger = get_logger(__name__)

INDICATOR_STYLES = {
    Indicator.DEFAULT: "dim",
    Indicator.BLUE: "bold blue",
    Indicator.GREEN: "bold green",
    Indicator.RED: "bold red",
}

PHASE_BADGES = {
    RunPhase.IDLE: "[dim]IDLE[/dim] ⚪",
    RunPhase.RUNNING: "[bold blue]RUNNING[/bold blue] 🔄",
    RunPhase.FINISHED: "[bold green]FINISHED[/bold green] ✅",
    RunPhase.CANCELLED: "[bold red]CANCELLED[/bold red] 🛑",
}


def _format_ms(ts_ms: int) -> str:
    if not ts_ms:
        return "-"
    return datetime.fromtimestamp(ts_ms / 1000.0).strftime("%Y-%m-%d %H:%M:%S")


def make_status_table(snapshot: StateSnapshot) -> Table:
    """Key/value table of the snapshot fields."""
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Key", style="dim")
    table.add_column("Value")

    table.add_row("Run", snapshot.run_id or "[dim]None[/dim]")
    table.add_row("Phase", PHASE_BADGES[snapshot.phase])
    table.add_row("Job status", snapshot.status.value)
    table.add_row("Retries", f"[bold]{snapshot.retry_count}[/bold]/{snapshot.max_retry_count}")
    table.add_row("Started", _format_ms(snapshot.start_time_ms))
    table.add_row("Ended", _format_ms(snapshot.end_time_ms))
    if snapshot.elapsed_ms >= 0:
        table.add_row("Elapsed", f"{snapshot.elapsed_seconds:.2f}s")
    if snapshot.cancellation_reason:
        table.add_row("Reason", f"[cyan]{snapshot.cancellation_reason}[/cyan]")

    return table


def render_panel(snapshot: StateSnapshot) -> Panel:
    """Panel titled with the status line, coloured by the indicator."""
    line = describe(snapshot)
    style = INDICATOR_STYLES[line.indicator]
    return Panel(
        make_status_table(snapshot),
        title=Text(line.title, style=style),
        border_style=style.replace("bold ", ""),
    )


class ConsoleSink:
    """Prints the status line of every snapshot."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()

    def emit(self, snapshot: StateSnapshot) -> None:
        line = describe(snapshot)
        style = INDICATOR_STYLES[line.indicator]
        self.console.print(Text(f"[{snapshot.phase.value}] {line.title}", style=style))


class LiveStatusSink:
    """
    Keeps one status panel refreshed in place.

    Use as a context manager around the run; snapshots emitted outside the
    context are ignored.
    """

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()
        self._live: Optional[Live] = None
        self._lock = threading.Lock()
        self.last: Optional[StateSnapshot] = None

    def __enter__(self) -> "LiveStatusSink":
        self._live = Live(
            render_panel(StateSnapshot.idle()),
            console=self.console,
            refresh_per_second=2,
            transient=False,
        )
        self._live.start()
        return self

    def __exit__(self, *exc_info) -> None:
        if self._live is not None:
            self._live.stop()
            self._live = None

    def emit(self, snapshot: StateSnapshot) -> None:
        with self._lock:
            self.last = snapshot
            if self._live is not None:
                self._live.update(render_panel(snapshot))


def print_summary(console: Console, snapshot: StateSnapshot) -> None:
    """Print a final summary after a run."""
    line = describe(snapshot)

    console.print()
    console.print("[bold]Run Summary[/bold]")
    console.print(f"  Run ID: {snapshot.run_id}")
    console.print(f"  Final Phase: {PHASE_BADGES[snapshot.phase]}")
    console.print(f"  Job Status: {snapshot.status.value}")
    console.print(f"  Retries: {snapshot.retry_count}/{snapshot.max_retry_count}")
    console.print(f"  Elapsed: {snapshot.elapsed_seconds:.2f}s")
    if snapshot.cancellation_reason:
        console.print(f"  Reason: {snapshot.cancellation_reason}")
    console.print(Text(f"  {line.title}", style=INDICATOR_STYLES[line.indicator]))
    console.print()
