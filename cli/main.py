"""Portal Jobs CLI - Main Entry Point"""

import typer
from rich.console import Console
from rich.panel import Panel

from portal_jobs.config.settings import settings

# Import command modules
from .client.endpoints import PortalJobsClient, PortalJobsError
from .commands import jobs, worker
from .utils.formatting import print_error, print_info

console = Console()

# Create main Typer app
app = typer.Typer(
    name="portal-jobs",
    help="⚙️ Portal Jobs - job orchestration operator CLI",
    rich_markup_mode="rich",
)

# Add command subapps
app.add_typer(jobs.app, name="jobs")
app.add_typer(worker.app, name="worker")


@app.command()
def status():
    """📊 Check API status and worker fleet health"""
    base_url = settings.api_base_url
    print_info(f"Checking connection to: {base_url}")

    try:
        with PortalJobsClient(base_url) as client:
            health = client.health_check()
    except PortalJobsError as e:
        print_error(f"Failed to connect: {e}")
        console.print(
            Panel(
                f"🚫 [red]Connection Failed[/red]\n\n"
                f"Make sure the Portal Jobs API is running at:\n"
                f"[blue]{base_url}[/blue]\n\n"
                f"You can point the CLI elsewhere with:\n"
                f"[cyan]API_BASE_URL=<url> portal-jobs status[/cyan]",
                title="Connection Error",
                border_style="red",
            )
        )
        raise typer.Exit(1) from None

    fleet = health.get("worker") or {}
    console.print(
        Panel(
            f"🚀 [green]Connected Successfully![/green]\n\n"
            f"• Version: [cyan]{health.get('version', 'unknown')}[/cyan]\n"
            f"• Environment: [yellow]{health.get('environment', 'unknown')}[/yellow]\n"
            f"• Active workers: [green]{fleet.get('active_workers', 0)}[/green]\n"
            f"• Pending jobs: [yellow]{fleet.get('pending_jobs', 0)}[/yellow]\n"
            f"• Stale claims: [red]{fleet.get('stale_claims', 0)}[/red]\n"
            f"• API URL: [blue]{base_url}[/blue]",
            title="System Status",
            border_style="green",
        )
    )


@app.command()
def version():
    """📎 Show CLI version information"""
    from . import __version__

    console.print(
        Panel(
            f"⚙️ [bold cyan]Portal Jobs CLI[/bold cyan]\n\n"
            f"• Version: [green]{__version__}[/green]\n"
            f"• Type: [yellow]Command Line Interface[/yellow]",
            title="Version Info",
            border_style="cyan",
        )
    )


if __name__ == "__main__":
    app()
