"""Rich Formatting Utilities for CLI Output"""

import json
from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()

STATE_STYLES = {
    "PENDING": "yellow",
    "CLAIMED": "cyan",
    "RUNNING": "blue",
    "SUCCEEDED": "green",
    "FAILED": "red",
    "DEAD": "bold red",
}


def print_success(message: str):
    """Print success message with green styling"""
    console.print(f"[green]✓ {message}[/green]")


def print_error(message: str):
    """Print error message with red styling"""
    console.print(f"[red]✗ {message}[/red]")


def print_warning(message: str):
    """Print warning message with yellow styling"""
    console.print(f"[yellow]⚠ {message}[/yellow]")


def print_info(message: str):
    """Print info message with blue styling"""
    console.print(f"[blue]ℹ {message}[/blue]")


def _styled_state(state: str) -> str:
    style = STATE_STYLES.get(state, "white")
    return f"[{style}]{state}[/{style}]"


def create_jobs_table(jobs: list[dict[str, Any]]) -> Table:
    """Create a formatted table for a job listing"""
    table = Table(title="Jobs", box=box.ROUNDED)

    table.add_column("ID", justify="right", style="cyan", no_wrap=True)
    table.add_column("Type", justify="left", style="magenta")
    table.add_column("Queue", justify="center")
    table.add_column("State", justify="center")
    table.add_column("Attempts", justify="center", style="yellow")
    table.add_column("Run After", justify="left")
    table.add_column("Last Error", justify="left", style="dim")

    for job in jobs:
        last_error = job.get("last_error") or "—"
        table.add_row(
            str(job.get("id", "")),
            job.get("job_type", ""),
            job.get("queue", ""),
            _styled_state(job.get("state", "")),
            f"{job.get('attempt_count', 0)}/{job.get('max_attempts', 0)}",
            job.get("run_after", "—"),
            last_error[:60] + "..." if len(last_error) > 60 else last_error,
        )

    return table


def create_job_panel(job: dict[str, Any]) -> Panel:
    """Create detail panel for a single job"""
    content = (
        f"• Type: [magenta]{job.get('job_type')}[/magenta]\n"
        f"• Queue: [cyan]{job.get('queue')}[/cyan] (priority {job.get('priority')})\n"
        f"• State: {_styled_state(job.get('state', ''))}\n"
        f"• Attempts: [yellow]{job.get('attempt_count')}/{job.get('max_attempts')}[/yellow]\n"
        f"• Run After: {job.get('run_after')}\n"
        f"• Locked By: {job.get('locked_by') or '—'}\n"
        f"• Heartbeat: {job.get('heartbeat_at') or '—'}\n"
        f"• Completed: {job.get('completed_at') or '—'}\n"
        f"• Last Error: [red]{job.get('last_error') or '—'}[/red]\n\n"
        f"[bold]Payload[/bold]\n{json.dumps(job.get('payload', {}), indent=2)}"
    )
    return Panel(content, title=f"Job {job.get('id')}", border_style="blue")


def create_stats_panel(stats: dict[str, Any]) -> Panel:
    """Create formatted panel for queue statistics"""
    by_state = stats.get("by_state", {})
    depth = stats.get("queue_depth", {})

    states = "\n".join(
        f"  {_styled_state(state)}: {count}" for state, count in sorted(by_state.items())
    )
    queues = "\n".join(f"  [cyan]{queue}[/cyan]: {count}" for queue, count in depth.items())

    content = (
        f"📊 [bold blue]Jobs[/bold blue]: {stats.get('total_jobs', 0)}\n\n"
        f"[bold]By state[/bold]\n{states or '  —'}\n\n"
        f"[bold]Claimable now[/bold]\n{queues or '  —'}\n\n"
        f"• Stale claims: [yellow]{stats.get('stale_claims', 0)}[/yellow]\n"
        f"• Dead (last hour): [red]{stats.get('dead_last_hour', 0)}[/red]"
    )
    return Panel(content, title="Queue Overview", border_style="green")


def create_budget_panel(budget: dict[str, Any]) -> Panel:
    """Create formatted panel for the budget ledger"""
    ratio = budget.get("ratio", 0) or 0
    decision = budget.get("decision", "admit")
    border = {"admit": "green", "admit_reduced": "yellow"}.get(decision, "red")

    content = (
        f"💰 [bold]{budget.get('name')}[/bold]\n\n"
        f"• Period: {budget.get('period_start')} → {budget.get('next_period_start')}\n"
        f"• Spent: [yellow]${budget.get('spent_cents', 0) / 100:,.2f}[/yellow] "
        f"of ${budget.get('ceiling_cents', 0) / 100:,.2f} ({ratio:.1%})\n"
        f"• Remaining: [green]${budget.get('remaining_cents', 0) / 100:,.2f}[/green]\n"
        f"• Alert level: {budget.get('alert_level', 0)}%\n"
        f"• Current decision: [bold]{decision}[/bold]"
    )
    return Panel(content, title="AI Tagging Budget", border_style=border)
