"""Worker Commands - Run job workers and maintenance in-process"""

import asyncio
import signal

import typer
from rich.console import Console
from rich.panel import Panel

from portal_jobs.config.logging import setup_logging
from portal_jobs.config.settings import settings
from portal_jobs.v1.infra.jobs.queues import JobQueue
from portal_jobs.v1.infra.jobs.registry_init import register_job_handlers
from portal_jobs.v1.infra.jobs.worker import JobWorker

from ..utils.formatting import print_error, print_info, print_success, print_warning

console = Console()
app = typer.Typer(name="worker", help="Job worker commands")


def _validate_queues(queues: list[str] | None) -> list[str] | None:
    if not queues:
        return None
    valid = [q.value for q in JobQueue]
    unknown = [q for q in queues if q.upper() not in valid]
    if unknown:
        print_error(f"Unknown queue(s): {', '.join(unknown)}. Valid: {', '.join(valid)}")
        raise typer.Exit(1)
    return [q.upper() for q in queues]


async def _run_until_signalled(worker: JobWorker) -> None:
    loop = asyncio.get_running_loop()
    stop_requested = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_requested.set)

    runner = asyncio.create_task(worker.start())
    waiter = asyncio.create_task(stop_requested.wait())
    try:
        await asyncio.wait({runner, waiter}, return_when=asyncio.FIRST_COMPLETED)
        await worker.stop()
        await runner
    finally:
        waiter.cancel()
        await worker.database.close()


@app.command("run")
def run_worker(
    queue: list[str] | None = typer.Option(
        None, "--queue", "-q", help="Queue to service (repeatable, default: all)"
    ),
    create_tables: bool = typer.Option(
        False, "--create-tables", help="Create tables first (development only)"
    ),
):
    """⚙️ Run a worker until SIGINT/SIGTERM"""
    queues = _validate_queues(queue)

    setup_logging(settings)
    handlers = register_job_handlers(settings)
    if not handlers:
        print_warning("No job handlers registered; set HANDLER_MODULES")

    worker = JobWorker(settings, queues=queues)
    console.print(
        Panel(
            f"• Worker: [cyan]{worker.worker_id}[/cyan]\n"
            f"• Queues: [yellow]{', '.join(q.value for q in worker.queues)}[/yellow]\n"
            f"• Handlers: [green]{', '.join(handlers) or 'none'}[/green]",
            title="Starting Worker",
            border_style="cyan",
        )
    )

    async def _main() -> None:
        if create_tables:
            await worker.database.create_all()
        await _run_until_signalled(worker)

    asyncio.run(_main())
    print_success("Worker stopped")


@app.command("reap")
def reap_stale_claims():
    """🧹 Recover stale claims and orphaned semaphore slots once"""
    setup_logging(settings)
    worker = JobWorker(settings)

    async def _reap():
        try:
            return await worker.reap_once()
        finally:
            await worker.database.close()

    result = asyncio.run(_reap())

    if not result.recovered and not result.exhausted:
        print_info("No stale claims found")
        return

    print_success(f"Recovered {len(result.recovered)} stale claim(s)")
    if result.exhausted:
        print_warning(
            f"{len(result.exhausted)} claim(s) had no attempts left and were marked DEAD"
        )
