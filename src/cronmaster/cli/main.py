"""CronMaster CLI application."""

from __future__ import annotations

import asyncio
import json
import signal
import sys
from pathlib import Path
from typing import Optional

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from cronmaster import __version__
from cronmaster.config import DEFAULT_CONFIG_DIR, ConfigError, create_default_config
from cronmaster.core.playbooks import PlaybookMatcher
from cronmaster.core.workitems import map_category
from cronmaster.models import Incident, Issue, RunStatus, WorkItemStatus
from cronmaster.runtime import Runtime, build_runtime

# Initialize
app = typer.Typer(
    name="cronmaster",
    help="CronMaster - single-tick job orchestrator with self-healing work queue",
    no_args_is_help=True,
)
console = Console()

# Sub-commands
work_app = typer.Typer(help="Work item commands")
app.add_typer(work_app, name="work")

playbooks_app = typer.Typer(help="Self-heal playbook commands")
app.add_typer(playbooks_app, name="playbooks")

_state: dict[str, Path] = {"home": DEFAULT_CONFIG_DIR}

STATUS_COLORS = {
    "SUCCESS": "green",
    "FAIL": "red",
    "TIMEOUT": "red",
    "DEGRADED": "yellow",
    "RUNNING": "blue",
}

SEVERITY_COLORS = {
    "CRITICAL": "red",
    "HIGH": "magenta",
    "MEDIUM": "yellow",
    "LOW": "cyan",
    "INFO": "dim",
}


def setup_logging(verbose: bool = False, level: str = "INFO") -> None:
    """Setup logging configuration."""
    logger.remove()

    level = "DEBUG" if verbose else level.upper()

    # Console logging
    logger.add(
        sys.stderr,
        format="<level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
        level=level,
        colorize=True,
    )


def _load_runtime(verbose: bool = False) -> Runtime:
    """Build the runtime or exit with the configuration error."""
    setup_logging(verbose)
    try:
        runtime = build_runtime(_state["home"])
    except ConfigError as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        raise typer.Exit(1)
    if not verbose:
        setup_logging(False, runtime.config.daemon.log_level)
    return runtime


def _fmt_time(value) -> str:
    return value.isoformat()[:19].replace("T", " ") if value else "-"


@app.callback()
def main_callback(
    home: Optional[Path] = typer.Option(
        None,
        "--home",
        envvar="CRONMASTER_HOME",
        help="Config directory (default ~/.cronmaster)",
    ),
) -> None:
    """CronMaster - single-tick job orchestrator."""
    if home is not None:
        _state["home"] = home


# ============================================================================
# Setup
# ============================================================================


@app.command("init")
def init_config() -> None:
    """Initialize CronMaster configuration and default jobs."""
    base = create_default_config(_state["home"])
    console.print(f"[green]✓ Created configuration at {base}[/green]")
    console.print(f"\nAdd job files to: {base / 'jobs'}/")


@app.command("version")
def version() -> None:
    """Show version."""
    console.print(f"CronMaster v{__version__}")


# ============================================================================
# Scheduling
# ============================================================================


@app.command("tick")
def tick(
    as_json: bool = typer.Option(False, "--json", help="Print the tick report as JSON"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """Run a single scheduling tick.

    Exits 0 when another tick holds the lock.
    """
    runtime = _load_runtime(verbose)
    report = asyncio.run(runtime.scheduler.tick())

    if as_json:
        console.print_json(json.dumps(report.to_dict()))
        return

    if not report.lock_acquired:
        console.print("[yellow]Another tick holds the lock, skipped[/yellow]")
        return

    table = Table(title=f"Tick {report.owner}")
    table.add_column("Job", style="cyan")
    table.add_column("Due")
    table.add_column("Status")
    table.add_column("Reason")
    table.add_column("Duration", justify="right")

    for outcome in report.outcomes:
        status = outcome.status.value if outcome.status else "-"
        color = STATUS_COLORS.get(status, "white")
        table.add_row(
            outcome.job,
            "yes" if outcome.due else "no",
            f"[{color}]{status}[/{color}]",
            outcome.reason or "-",
            f"{outcome.duration_seconds:.2f}s" if outcome.duration_seconds is not None else "-",
        )

    console.print(table)
    summary = report.summary
    console.print(
        f"[dim]{summary['ran']} ran, {summary['skipped']} skipped, "
        f"{summary['fail']} failed, {summary['timeout']} timed out[/dim]"
    )


@app.command("run")
def run_loop(
    interval: Optional[int] = typer.Option(None, "--interval", "-i", help="Seconds between ticks"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """Run ticks in the foreground until interrupted."""
    runtime = _load_runtime(verbose)
    seconds = interval or runtime.config.daemon.tick_interval_seconds
    console.print(f"[blue]Ticking every {seconds}s (Ctrl+C to stop)[/blue]")

    async def _main() -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, runtime.scheduler.stop)
        await runtime.scheduler.run(seconds)

    asyncio.run(_main())
    console.print("[green]✓ Stopped[/green]")


@app.command("trigger")
def trigger_job(
    name: str = typer.Argument(..., help="Job name to run"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """Force run a job immediately (regardless of schedule)."""
    runtime = _load_runtime(verbose)
    try:
        outcome = asyncio.run(runtime.scheduler.run_job(name))
    except KeyError:
        console.print(f"[red]Job '{name}' not found[/red]")
        raise typer.Exit(1)

    if not outcome.ran:
        console.print(f"[yellow]Job '{name}' not run: {outcome.reason}[/yellow]")
        return

    status = outcome.status.value
    color = STATUS_COLORS.get(status, "white")
    console.print(f"[{color}]{name}: {status}[/{color}]" + (f" ({outcome.reason})" if outcome.reason else ""))
    if outcome.status in (RunStatus.FAIL, RunStatus.TIMEOUT):
        raise typer.Exit(1)


# ============================================================================
# Jobs and Runs
# ============================================================================


@app.command("jobs")
def list_jobs(
    enabled_only: bool = typer.Option(False, "--enabled", help="Show only enabled jobs"),
) -> None:
    """List jobs with their schedule and last outcome."""
    runtime = _load_runtime()
    jobs = runtime.db.get_jobs(enabled_only=enabled_only)

    if not jobs:
        console.print("[yellow]No jobs configured[/yellow]")
        console.print(f"Add jobs to: {runtime.base_dir / 'jobs'}/")
        return

    table = Table(title="Jobs")
    table.add_column("Job", style="cyan")
    table.add_column("Handler")
    table.add_column("Schedule")
    table.add_column("Priority", justify="right")
    table.add_column("Last Status")
    table.add_column("Next Run")
    table.add_column("Failures", justify="right")

    for job in jobs:
        if job.cron_expression:
            schedule = f"cron {job.cron_expression}"
        else:
            schedule = f"every {job.interval_seconds}s"

        if not job.enabled:
            status_str = "[dim]disabled[/dim]"
        elif job.last_status:
            color = STATUS_COLORS.get(job.last_status.value, "white")
            status_str = f"[{color}]{job.last_status.value}[/{color}]"
        else:
            status_str = "-"

        table.add_row(
            job.name,
            job.handler,
            schedule,
            str(job.priority),
            status_str,
            _fmt_time(job.next_run_at),
            str(job.consecutive_failures),
        )

    console.print(table)


@app.command("runs")
def list_runs(
    job_name: Optional[str] = typer.Option(None, "--job", "-j", help="Filter by job name"),
    status: Optional[str] = typer.Option(None, "--status", "-s", help="Filter by status"),
    limit: int = typer.Option(50, "--limit", "-n", help="Max results"),
) -> None:
    """List recent job runs."""
    runtime = _load_runtime()
    try:
        statuses = [RunStatus(status.upper())] if status else None
    except ValueError:
        console.print(f"[red]Unknown run status '{status}'[/red]")
        raise typer.Exit(1)

    runs = runtime.db.get_runs(job_name=job_name, statuses=statuses, limit=limit)
    if not runs:
        console.print("[dim]No runs found[/dim]")
        return

    table = Table(title=f"Recent Runs ({len(runs)})")
    table.add_column("Run ID", style="cyan")
    table.add_column("Job", style="blue")
    table.add_column("Status")
    table.add_column("Duration")
    table.add_column("Started")
    table.add_column("Summary")

    for run in runs:
        color = STATUS_COLORS.get(run.status.value, "white")
        table.add_row(
            str(run.id),
            run.job_name,
            f"[{color}]{run.status.value}[/{color}]",
            f"{run.duration_seconds:.2f}s" if run.duration_seconds is not None else "-",
            _fmt_time(run.started_at),
            (run.error or run.summary or "")[:60],
        )

    console.print(table)


# ============================================================================
# Work Item Commands
# ============================================================================


@work_app.command("list")
def work_list(
    status: Optional[str] = typer.Option(None, "--status", "-s", help="Filter by status"),
    severity: Optional[str] = typer.Option(None, "--severity", help="Filter by severity"),
    limit: int = typer.Option(50, "--limit", "-n", help="Max results"),
    as_json: bool = typer.Option(False, "--json", help="Print as JSON"),
) -> None:
    """List work items, newest first."""
    runtime = _load_runtime()
    try:
        result = runtime.store.query(status=status, severity=severity, limit=limit)
    except ValueError as e:
        console.print(f"[red]Invalid filter: {e}[/red]")
        raise typer.Exit(1)

    if as_json:
        console.print_json(json.dumps(result.to_dict()))
        return

    if not result.items:
        console.print("[dim]No work items found[/dim]")
        return

    table = Table(title=f"Work Items ({result.total})")
    table.add_column("ID", style="cyan")
    table.add_column("Severity")
    table.add_column("Status")
    table.add_column("Priority", justify="right")
    table.add_column("Attempts", justify="right")
    table.add_column("Title")

    for item in result.items:
        color = SEVERITY_COLORS.get(item.severity.value, "white")
        table.add_row(
            str(item.id),
            f"[{color}]{item.severity.value}[/{color}]",
            item.status.value,
            str(item.priority_score),
            str(item.attempts),
            item.title[:60],
        )

    console.print(table)
    counts = ", ".join(f"{k}={v}" for k, v in sorted(result.by_status.items()))
    console.print(f"[dim]{counts}[/dim]")


@work_app.command("show")
def work_show(
    item_id: int = typer.Argument(..., help="Work item ID"),
) -> None:
    """Show a work item and its transition history."""
    runtime = _load_runtime()
    item = runtime.store.get(item_id)
    if item is None:
        console.print(f"[red]Work item {item_id} not found[/red]")
        raise typer.Exit(1)

    console.print(f"[bold]#{item.id} {item.title}[/bold]")
    console.print(f"[dim]Status:[/dim] {item.status.value}")
    console.print(f"[dim]Severity:[/dim] {item.severity.value}  [dim]Category:[/dim] {item.category.value}")
    console.print(f"[dim]Priority:[/dim] {item.priority_score}  [dim]Attempts:[/dim] {item.attempts}")
    console.print(f"[dim]Fingerprint:[/dim] {item.fingerprint}")
    if item.locator:
        console.print(f"[dim]Locator:[/dim] {item.locator}")
    if item.requires_approval:
        approval = f"approved by {item.approved_by}" if item.approved_at else "pending"
        console.print(f"[dim]Approval:[/dim] {approval}")
    if item.last_error:
        console.print(f"[dim]Last error:[/dim] [red]{item.last_error}[/red]")
    if item.recommended_fix:
        console.print(f"\n[dim]Recommended fix:[/dim]\n{item.recommended_fix}")

    events = runtime.store.events(item_id)
    if events:
        table = Table(title="History")
        table.add_column("At")
        table.add_column("From")
        table.add_column("To")
        table.add_column("Reason")
        for event in events:
            table.add_row(
                _fmt_time(event["at"]),
                event["from_status"] or "-",
                event["to_status"],
                event["reason"] or "-",
            )
        console.print(table)


@work_app.command("add")
def work_add(
    title: str = typer.Option(..., "--title", "-t", help="Issue title"),
    severity: str = typer.Option("MEDIUM", "--severity", "-s", help="Severity (free text)"),
    category: str = typer.Option("other", "--category", "-c", help="Category (free text)"),
    locator: Optional[str] = typer.Option(None, "--locator", "-l", help="URL, route or endpoint"),
    description: str = typer.Option("", "--description", "-d", help="Issue description"),
) -> None:
    """Turn one issue into a work item (deduplicated by fingerprint)."""
    runtime = _load_runtime()
    issue = Issue(
        title=title,
        severity=severity,
        category=category,
        locator=locator,
        description=description,
        created_by="cli",
    )
    result = runtime.store.create(issue)

    if result.action == "created":
        console.print(f"[green]✓ Created work item {result.work_item_id}[/green]")
    elif result.action == "reopened":
        console.print(f"[green]✓ Reopened work item {result.work_item_id}[/green]")
    elif result.action == "filtered":
        console.print("[dim]Informational issue, no work item created[/dim]")
    else:
        console.print(f"[yellow]Duplicate of work item {result.work_item_id} ({result.status.value})[/yellow]")


@work_app.command("transition")
def work_transition(
    item_id: int = typer.Argument(..., help="Work item ID"),
    to_status: str = typer.Argument(..., help="Target status"),
    error: Optional[str] = typer.Option(None, "--error", "-e", help="Error message to record"),
    cooldown: Optional[int] = typer.Option(None, "--cooldown", help="Cooldown in seconds"),
    reason: Optional[str] = typer.Option(None, "--reason", "-r", help="Reason for the audit trail"),
) -> None:
    """Move a work item to another status."""
    runtime = _load_runtime()
    try:
        target = WorkItemStatus(to_status.upper())
    except ValueError:
        console.print(f"[red]Unknown status '{to_status}'[/red]")
        raise typer.Exit(1)

    if not runtime.store.transition(
        item_id,
        target,
        error=error,
        cooldown_seconds=cooldown,
        reason=reason or "cli",
    ):
        console.print(f"[red]✗ Transition of work item {item_id} to {target.value} rejected[/red]")
        raise typer.Exit(1)

    console.print(f"[green]✓ Work item {item_id} -> {target.value}[/green]")


@work_app.command("approve")
def work_approve(
    item_id: int = typer.Argument(..., help="Work item ID"),
    approved_by: str = typer.Option("operator", "--by", help="Who approves"),
) -> None:
    """Approve a work item that requires approval."""
    runtime = _load_runtime()
    if not runtime.store.approve(item_id, approved_by):
        console.print(f"[red]Work item {item_id} not found[/red]")
        raise typer.Exit(1)
    console.print(f"[green]✓ Work item {item_id} approved[/green]")


# ============================================================================
# Proof
# ============================================================================


@app.command("proof")
def proof(
    hours: Optional[int] = typer.Option(None, "--hours", "-H", help="Window in hours"),
    write: bool = typer.Option(True, "--write/--no-write", help="Write the JSON report"),
    check: bool = typer.Option(False, "--check", help="Exit 1 when any proof check fails"),
) -> None:
    """Generate the uptime proof report."""
    runtime = _load_runtime()
    window = hours or runtime.config.proof.default_window_hours
    result = runtime.proof.check(window)
    report = result.report
    summary = report.summary

    console.print(f"[bold]Proof report ({window}h)[/bold]")
    console.print(f"  Runs: {summary.total_runs} ({summary.successes} ok, {summary.failures} failed, "
                  f"{summary.degraded} degraded, {summary.timeouts} timed out)")
    console.print(f"  Uptime: {summary.uptime_pct}%")
    console.print(f"  Heartbeats: {summary.heartbeat_count}/{summary.expected_heartbeats}")
    console.print(f"  Gaps: {len(report.gaps)} (max {report.max_gap_minutes} min)")

    healthy = report.verification.overall_healthy
    color = "green" if healthy else "red"
    console.print(f"  Healthy: [{color}]{'yes' if healthy else 'no'}[/{color}]")

    for failure in result.failures:
        console.print(f"  [red]✗ {failure}[/red]")

    if write:
        path = runtime.proof.write(report)
        console.print(f"[dim]Written to {path}[/dim]")

    if check and not result.passed:
        raise typer.Exit(1)


# ============================================================================
# Playbooks
# ============================================================================


@playbooks_app.command("list")
def playbooks_list() -> None:
    """List the playbook table."""
    runtime = _load_runtime()

    table = Table(title="Playbooks")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Match")
    table.add_column("Actions")

    for playbook in runtime.matcher.playbooks:
        criteria = playbook.match.model_dump(exclude_none=True, mode="json")
        table.add_row(
            playbook.id,
            playbook.name,
            ", ".join(f"{k}={v}" for k, v in criteria.items()) or "-",
            " > ".join(a.action_type.value for a in playbook.actions),
        )

    console.print(table)


@playbooks_app.command("match")
def playbooks_match(
    status_code: Optional[int] = typer.Option(None, "--status-code", help="HTTP status code"),
    locator: Optional[str] = typer.Option(None, "--locator", "-l", help="URL, route or endpoint"),
    category: Optional[str] = typer.Option(None, "--category", "-c", help="Category (free text)"),
    error: Optional[str] = typer.Option(None, "--error", "-e", help="Error message"),
    remediate: bool = typer.Option(False, "--remediate", help="Run the matched playbooks"),
    approved: bool = typer.Option(False, "--approved", help="Allow actions that need approval"),
) -> None:
    """Show which playbooks match an incident."""
    runtime = _load_runtime()
    incident = Incident(
        title=error or locator or "manual incident",
        status_code=status_code,
        locator=locator,
        category=map_category(category) if category else None,
        error_message=error,
    )

    matcher: PlaybookMatcher = runtime.matcher
    matched = matcher.match(incident)
    if not matched:
        console.print("[dim]No playbook matches[/dim]")
        return

    for playbook in matched:
        console.print(f"[cyan]{playbook.id}[/cyan] {playbook.name}")
        for action in playbook.actions:
            gate = " [yellow](approval)[/yellow]" if action.safety.requires_approval else ""
            console.print(f"  - {action.action_type.value} {action.target_type.value}:{action.target_id}{gate}")

    if remediate:
        result = asyncio.run(runtime.runner.remediate(incident, approved=approved))
        for action in result.actions:
            console.print(f"  {action.playbook_id}/{action.action_type}: {action.status}")
        if result.resolved:
            console.print("[green]✓ Resolved[/green]")
        else:
            console.print("[yellow]Not resolved[/yellow]")


# ============================================================================
# Entry Point
# ============================================================================


def main() -> None:
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
