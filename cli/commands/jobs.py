"""Jobs Commands - Submit and inspect background jobs"""

import json

import typer
from rich.console import Console

from ..client.endpoints import PortalJobsClient, PortalJobsError
from ..utils.formatting import (
    create_budget_panel,
    create_job_panel,
    create_jobs_table,
    create_stats_panel,
    print_error,
    print_info,
    print_success,
)

console = Console()
app = typer.Typer(name="jobs", help="Job submission and inspection commands")


@app.command("submit")
def submit_job(
    job_type: str = typer.Argument(..., help="Registered job type"),
    payload: str = typer.Option("{}", "--payload", "-p", help="JSON payload"),
    max_attempts: int | None = typer.Option(
        None, "--max-attempts", "-m", min=1, help="Override the queue's attempt ceiling"
    ),
    run_after: str | None = typer.Option(
        None, "--run-after", help="ISO-8601 earliest run time"
    ),
):
    """📥 Submit a job"""
    try:
        payload_data = json.loads(payload)
    except json.JSONDecodeError as e:
        print_error(f"Payload is not valid JSON: {e}")
        raise typer.Exit(1) from None

    try:
        with PortalJobsClient() as client:
            result = client.submit_job(
                job_type, payload_data, max_attempts=max_attempts, run_after=run_after
            )
    except PortalJobsError as e:
        print_error(f"Failed to submit job: {e}")
        raise typer.Exit(1) from None

    print_success(
        f"Submitted job {result['job_id']} to {result['queue']} ({result['state']})"
    )


@app.command("get")
def get_job(job_id: int = typer.Argument(..., help="Job ID")):
    """🔎 Show one job"""
    try:
        with PortalJobsClient() as client:
            job = client.get_job(job_id)
    except PortalJobsError as e:
        print_error(f"Failed to get job: {e}")
        raise typer.Exit(1) from None

    console.print(create_job_panel(job))

    failures = job.get("failures") or []
    if failures:
        print_info(f"{len(failures)} recorded failure(s), latest first:")
        for failure in reversed(failures):
            console.print(
                f"  #{failure.get('attempt')} [{failure.get('category')}] "
                f"{failure.get('error')} [dim]{failure.get('at')}[/dim]"
            )


@app.command("list")
def list_jobs(
    state: str | None = typer.Option(None, "--state", "-s", help="Filter by state"),
    queue: str | None = typer.Option(None, "--queue", "-q", help="Filter by queue"),
    job_type: str | None = typer.Option(None, "--type", "-t", help="Filter by job type"),
    limit: int = typer.Option(20, "--limit", "-l", help="Number of jobs to show"),
    offset: int = typer.Option(0, "--offset", help="Results offset"),
):
    """📋 List jobs"""
    try:
        with PortalJobsClient() as client:
            data = client.list_jobs(
                state=state, queue=queue, job_type=job_type, limit=limit, offset=offset
            )
    except PortalJobsError as e:
        print_error(f"Failed to list jobs: {e}")
        raise typer.Exit(1) from None

    jobs = data.get("jobs", [])
    if not jobs:
        print_info("No jobs found")
        return

    console.print(create_jobs_table(jobs))
    print_info(f"Showing {len(jobs)} of {data.get('total', len(jobs))} jobs")


@app.command("stats")
def show_stats():
    """📊 Show queue statistics"""
    try:
        with PortalJobsClient() as client:
            stats = client.get_stats()
    except PortalJobsError as e:
        print_error(f"Failed to get job statistics: {e}")
        raise typer.Exit(1) from None

    console.print(create_stats_panel(stats))


@app.command("budget")
def show_budget():
    """💰 Show the AI tagging budget for the current period"""
    try:
        with PortalJobsClient() as client:
            budget = client.get_budget()
    except PortalJobsError as e:
        print_error(f"Failed to get budget status: {e}")
        raise typer.Exit(1) from None

    console.print(create_budget_panel(budget))
