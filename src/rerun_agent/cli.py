"""
CLI interface using Click.

Commands: run (Azure DevOps build), simulate (scripted job), init, config,
history, stats.
"""

import asyncio
import signal
import sys
from contextlib import ExitStack
from pathlib import Path
from typing import Any, List, Optional

import click
import yaml
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from rerun_agent import __version__
from rerun_agent.adapters import (
    AzureDevOpsClient,
    AzureDevOpsRetryTrigger,
    AzureDevOpsStatusOracle,
    ScriptedActionTrigger,
    ScriptedStatusOracle,
    parse_statuses,
)
from rerun_agent.adapters.base import ActionTrigger, StatusOracle
from rerun_agent.config import (
    AgentConfig,
    ConfigurationError,
    SecretsManager,
    get_default_config_path,
    load_config,
    save_config,
)
from rerun_agent.controller import RetryController
from rerun_agent.host import USER_CANCEL_REASON, HostChannel
from rerun_agent.logging import get_logger, setup_logging
from rerun_agent.metrics import MetricsCollector, RunMetrics, aggregate_run_stats
from rerun_agent.safety.hotkey import HotkeyListener
from rerun_agent.sinks import FanoutSink, JsonlSnapshotSink, LoggingSink, load_snapshots
from rerun_agent.state import StateSnapshot
from rerun_agent.tui import ConsoleSink, LiveStatusSink, print_summary, render_panel

console = Console()
logger = get_logger(__name__)


@click.group(invoke_without_command=True)
@click.option("--version", is_flag=True, help="Show version and exit")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@click.pass_context
def main(ctx: click.Context, version: bool, verbose: bool) -> None:
    """rerun-agent - reruns failed pipeline jobs until they succeed."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose

    if verbose:
        setup_logging(level="DEBUG")
    else:
        setup_logging(level="INFO")

    if version:
        console.print(f"rerun-agent v{__version__}")
        sys.exit(0)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


@main.command()
@click.argument("build_id", type=int)
@click.option("--organization", "-o", help="Azure DevOps organization")
@click.option("--project", "-p", help="Azure DevOps project")
@click.option("--max-retries", "-n", type=int, help="Retry budget for this run")
@click.option("--iteration-delay", type=float, help="Seconds between status polls")
@click.option("--timeout", type=float, help="Hard ceiling for the run in seconds")
@click.option("--hotkey/--no-hotkey", default=None, help="Listen for the global toggle hotkey")
@click.option("--journal/--no-journal", default=None, help="Append snapshots to the journal")
@click.option("--live", is_flag=True, help="Show a live status panel instead of one line per update")
@click.option("--config", "-c", type=click.Path(), help="Path to config file")
def run(
    build_id: int,
    organization: Optional[str],
    project: Optional[str],
    max_retries: Optional[int],
    iteration_delay: Optional[float],
    timeout: Optional[float],
    hotkey: Optional[bool],
    journal: Optional[bool],
    live: bool,
    config: Optional[str],
) -> None:
    """Watch an Azure DevOps build and rerun its failed jobs."""
    agent_config = _load_or_exit(config)
    agent_config = _with_overrides(
        agent_config,
        controller={
            "max_retry_count": max_retries,
            "iteration_delay_seconds": iteration_delay,
            "timeout_seconds": timeout,
        },
        azure_devops={"organization": organization, "project": project},
        host={"hotkey_enabled": hotkey},
        storage={"journal_enabled": journal},
    )

    try:
        client = AzureDevOpsClient.from_config(agent_config.azure_devops)
    except ConfigurationError as e:
        _exit_with(e)

    logger.info(
        "Watching build",
        build_id=build_id,
        organization=agent_config.azure_devops.organization,
        project=agent_config.azure_devops.project,
    )

    try:
        final = _execute(
            agent_config,
            AzureDevOpsStatusOracle(client, build_id),
            AzureDevOpsRetryTrigger(client, build_id),
            live=live,
        )
    finally:
        client.close()

    print_summary(console, final)


@main.command()
@click.option(
    "--statuses", "-s", default="failed,active,failed,active,success", show_default=True,
    help="Comma separated job statuses returned in order (last repeats)",
)
@click.option("--trigger", "trigger_results", default="true", show_default=True, help="Trigger outcomes, e.g. true,false")
@click.option("--confirm", "confirm_results", default="true", show_default=True, help="Confirm outcomes, e.g. true,false")
@click.option("--max-retries", "-n", type=int, default=3, show_default=True, help="Retry budget")
@click.option("--iteration-delay", type=float, default=0.5, show_default=True, help="Seconds between polls")
@click.option("--settle", type=float, default=0.5, show_default=True, help="Settle window after a retry")
@click.option("--timeout", type=float, default=30.0, show_default=True, help="Hard ceiling in seconds")
@click.option("--journal/--no-journal", default=False, help="Append snapshots to the journal")
@click.option("--live", is_flag=True, help="Show a live status panel instead of one line per update")
@click.option("--config", "-c", type=click.Path(), help="Path to config file")
def simulate(
    statuses: str,
    trigger_results: str,
    confirm_results: str,
    max_retries: int,
    iteration_delay: float,
    settle: float,
    timeout: float,
    journal: bool,
    live: bool,
    config: Optional[str],
) -> None:
    """Run the controller against a scripted job."""
    agent_config = _load_or_exit(config)
    agent_config = _with_overrides(
        agent_config,
        controller={
            "max_retry_count": max_retries,
            "iteration_delay_seconds": iteration_delay,
            "post_action_settle_seconds": settle,
            "timeout_seconds": timeout,
            "confirm_delay_seconds": min(0.1, iteration_delay),
            "poll_interval_seconds": min(0.1, iteration_delay) or 0.1,
        },
        host={"hotkey_enabled": False},
        storage={"journal_enabled": journal, "metrics_enabled": journal},
    )

    try:
        oracle = ScriptedStatusOracle(parse_statuses(statuses))
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--statuses")
    trigger = ScriptedActionTrigger(
        trigger_results=_parse_bools(trigger_results, "--trigger"),
        confirm_results=_parse_bools(confirm_results, "--confirm"),
    )

    final = _execute(agent_config, oracle, trigger, live=live)

    print_summary(console, final)
    console.print(
        f"[dim]oracle calls: {oracle.calls}, triggers: {trigger.trigger_calls}, "
        f"confirms: {trigger.confirm_calls}[/dim]"
    )


@main.command()
@click.option("--force", "-f", is_flag=True, help="Overwrite an existing config file")
@click.option("--path", type=click.Path(), help="Where to write (default: ~/.rerun-agent/config.yaml)")
def init(force: bool, path: Optional[str]) -> None:
    """Write a default config file."""
    target = Path(path) if path else get_default_config_path()

    if target.exists() and not force:
        console.print(f"[yellow]Config already exists: {target}[/yellow]")
        console.print("[dim]Use --force to overwrite[/dim]")
        sys.exit(1)

    written = save_config(AgentConfig(), str(target))
    console.print(f"[green]✓[/green] Wrote default config to {written}")
    console.print(f"[dim]Set {SecretsManager.AZURE_DEVOPS_TOKEN} in your environment before 'rerun-agent run'[/dim]")


@main.command(name="config")
@click.option("--validate", is_flag=True, help="Check the config is ready for a run")
@click.option("--config", "-c", "config_path", type=click.Path(), help="Path to config file")
def show_config(validate: bool, config_path: Optional[str]) -> None:
    """Show the effective configuration."""
    agent_config = _load_or_exit(config_path)

    console.print(Panel(
        yaml.safe_dump(agent_config.model_dump(), default_flow_style=False, sort_keys=False).rstrip(),
        title="Configuration",
        border_style="blue",
    ))

    table = Table(title="Secrets")
    table.add_column("Variable", style="cyan")
    table.add_column("Value")
    for key, value in SecretsManager.get_status().items():
        table.add_row(key, value)
    console.print(table)

    if validate:
        warnings = agent_config.validate_for_run()
        if warnings:
            console.print("[yellow]Configuration warnings:[/yellow]")
            for warning in warnings:
                console.print(f"  - {warning}")
            sys.exit(1)
        console.print("[green]✓[/green] Configuration is ready for a run")


@main.command()
@click.option("--run", "-r", "run_id", help="Only show snapshots of this run")
@click.option("--limit", "-l", default=20, show_default=True, help="Number of snapshots to show")
@click.option("--config", "-c", type=click.Path(), help="Path to config file")
def history(run_id: Optional[str], limit: int, config: Optional[str]) -> None:
    """Show journaled snapshots."""
    agent_config = _load_or_exit(config)
    snapshots = load_snapshots(agent_config.journal_path, run_id=run_id)

    if not snapshots:
        console.print("[yellow]No snapshots found.[/yellow]")
        return

    table = Table(title=f"Snapshot history ({len(snapshots)} total)")
    table.add_column("Run", style="cyan")
    table.add_column("Phase")
    table.add_column("Status")
    table.add_column("Retries", justify="right")
    table.add_column("Elapsed (s)", justify="right")
    table.add_column("Reason")

    for snapshot in snapshots[-limit:]:
        table.add_row(
            snapshot.run_id or "-",
            snapshot.phase.value,
            snapshot.status.value,
            f"{snapshot.retry_count}/{snapshot.max_retry_count}",
            f"{snapshot.elapsed_seconds:.2f}" if snapshot.elapsed_ms >= 0 else "-",
            snapshot.cancellation_reason or "",
        )

    console.print(table)
    console.print(render_panel(snapshots[-1]))


@main.command()
@click.option("--run", "-r", "run_id", help="Run ID (default: latest)")
@click.option("--all", "-a", "show_all", is_flag=True, help="Show stats for all runs")
@click.option("--config", "-c", type=click.Path(), help="Path to config file")
def stats(run_id: Optional[str], show_all: bool, config: Optional[str]) -> None:
    """Show run statistics and metrics."""
    agent_config = _load_or_exit(config)
    runs_path = agent_config.runs_path

    run_dirs = [d for d in runs_path.iterdir() if d.is_dir()] if runs_path.exists() else []
    if not run_dirs:
        console.print("[yellow]No runs found.[/yellow]")
        return

    if show_all:
        console.print(f"\n[bold]Run Statistics ({len(run_dirs)} runs)[/bold]\n")

        table = Table()
        table.add_column("Run", style="cyan")
        table.add_column("Started")
        table.add_column("Polls", justify="right")
        table.add_column("Retries", justify="right")
        table.add_column("Warnings", justify="right")
        table.add_column("Result")

        ordered = sorted(run_dirs, key=lambda d: d.stat().st_mtime, reverse=True)
        for run_dir in ordered[:10]:
            stats_data = aggregate_run_stats(run_dir)
            if not stats_data:
                continue

            counts = stats_data.get("counts", {})
            table.add_row(
                run_dir.name,
                stats_data.get("started_at", "")[:19],
                str(counts.get("status_poll", 0)),
                str(counts.get("retry_submitted", 0)),
                str(counts.get("detection_warning", 0) + counts.get("confirm_failure", 0)),
                _format_result(stats_data),
            )

        console.print(table)
        console.print("\n[dim]Use 'rerun-agent stats -r <run_id>' for details[/dim]")
        return

    if run_id:
        run_dir = next((d for d in run_dirs if d.name.startswith(run_id)), None)
        if not run_dir:
            console.print(f"[red]Run not found: {run_id}[/red]")
            return
    else:
        run_dir = max(run_dirs, key=lambda d: d.stat().st_mtime)

    stats_data = aggregate_run_stats(run_dir)
    if not stats_data:
        console.print(f"[yellow]No metrics found for run: {run_dir.name}[/yellow]")
        return

    console.print("\n[bold]Run Statistics[/bold]")
    console.print(f"  Run: {run_dir.name}")
    console.print(f"  Result: {_format_result(stats_data)}")
    console.print()

    counts = stats_data.get("counts", {})
    console.print("[bold]Event Counts[/bold]")
    count_table = Table(show_header=False)
    count_table.add_column("Metric", style="cyan")
    count_table.add_column("Count", justify="right")
    for key, value in sorted(counts.items()):
        count_table.add_row(key.replace("_", " ").title(), str(value))
    console.print(count_table)

    durations = stats_data.get("durations", {})
    if durations:
        console.print("\n[bold]Timing Statistics[/bold]")
        dur_table = Table()
        dur_table.add_column("Operation", style="cyan")
        dur_table.add_column("Calls", justify="right")
        dur_table.add_column("Avg (ms)", justify="right")
        dur_table.add_column("Total (s)", justify="right")
        for key, d in durations.items():
            dur_table.add_row(
                key.replace("_", " ").title(),
                str(d["count"]),
                f"{d['avg_ms']:.0f}",
                f"{d['total_ms'] / 1000:.1f}",
            )
        console.print(dur_table)

    console.print()


def _execute(
    agent_config: AgentConfig,
    oracle: StatusOracle,
    trigger: ActionTrigger,
    live: bool = False,
) -> StateSnapshot:
    """Wire sinks, metrics and the host channel, then block until the run ends."""
    ctx = click.get_current_context(silent=True)
    display = LiveStatusSink(console) if live else ConsoleSink(console)

    sink = FanoutSink([display])
    if ctx is not None and ctx.obj and ctx.obj.get("verbose"):
        sink.add(LoggingSink())
    if agent_config.storage.journal_enabled:
        sink.add(JsonlSnapshotSink(agent_config.journal_path))

    collector = MetricsCollector(agent_config.runs_path if agent_config.storage.metrics_enabled else None)
    controller = RetryController(
        agent_config.controller, oracle, trigger,
        sink=sink,
        metrics=RunMetrics(collector),
    )

    with ExitStack() as stack:
        if live:
            stack.enter_context(display)
        try:
            return asyncio.run(_drive(controller, agent_config))
        except KeyboardInterrupt:
            logger.info("Interrupted by user")
            controller.cancel(USER_CANCEL_REASON)
            return controller.current_state()


async def _drive(controller: RetryController, agent_config: AgentConfig) -> StateSnapshot:
    loop = asyncio.get_running_loop()
    host = HostChannel(controller, loop=loop)

    try:
        loop.add_signal_handler(signal.SIGINT, controller.cancel, USER_CANCEL_REASON)
    except (NotImplementedError, RuntimeError):
        logger.debug("Signal handlers unavailable, relying on KeyboardInterrupt")

    listener = None
    if agent_config.host.hotkey_enabled:
        listener = HotkeyListener(agent_config.host.toggle_hotkey, on_activate=host.toggle_threadsafe)
        if listener.start():
            console.print(f"[dim]Press {agent_config.host.toggle_hotkey} to cancel[/dim]")

    try:
        host.toggle()
        return await host.wait()
    finally:
        if listener is not None:
            listener.stop()


def _with_overrides(agent_config: AgentConfig, **sections: dict) -> AgentConfig:
    """Apply CLI overrides (None means 'not given') and re-validate."""
    data = agent_config.model_dump()
    for section, values in sections.items():
        data[section].update({k: v for k, v in values.items() if v is not None})
    try:
        return AgentConfig(**data)
    except ValidationError as e:
        _exit_with(ConfigurationError(f"Invalid option values: {e}"))


def _parse_bools(raw: str, param: str) -> List[bool]:
    values = []
    for part in raw.split(","):
        part = part.strip().lower()
        if not part:
            continue
        if part not in ("true", "false", "1", "0", "yes", "no"):
            raise click.BadParameter(f"expected true/false, got '{part}'", param_hint=param)
        values.append(part in ("true", "1", "yes"))
    return values


def _format_result(stats_data: dict[str, Any]) -> str:
    phase = stats_data.get("phase")
    if phase == "finished":
        return f"[green]finished[/green] ({stats_data.get('retry_count', 0)} retries)"
    if phase == "cancelled":
        return f"[red]cancelled[/red] ({stats_data.get('reason')})"
    return "[yellow]incomplete[/yellow]"


def _load_or_exit(config_path: Optional[str]) -> AgentConfig:
    try:
        return load_config(config_path)
    except ConfigurationError as e:
        _exit_with(e)


def _exit_with(error: ConfigurationError) -> None:
    console.print("[red]Configuration error:[/red]", escape(str(error)))
    sys.exit(1)


if __name__ == "__main__":
    main()
