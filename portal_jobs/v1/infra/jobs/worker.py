"""
Multi-queue job worker with heartbeats, resource governors and stale-claim recovery.
"""

import asyncio
import os
import random
import socket
from datetime import timedelta
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from portal_jobs.config.logging import bind_job_context, clear_job_context, get_logger
from portal_jobs.config.settings import Settings
from portal_jobs.infra.database import Database, get_database, utcnow
from portal_jobs.v1.core.exceptions import (
    AdmissionDeferred,
    PermanentFailure,
    StaleClaimRecovered,
    TransientFailure,
)
from portal_jobs.v1.core.registries import JobRegistry, job_registry
from portal_jobs.v1.infra.jobs.claims import ClaimCoordinator, ReapResult
from portal_jobs.v1.infra.jobs.escalation import EscalationNotifier, build_notifier
from portal_jobs.v1.infra.jobs.governors import BudgetThrottle, ConcurrencySemaphore
from portal_jobs.v1.infra.jobs.handlers import ExecutionContext, execute_handler
from portal_jobs.v1.infra.jobs.models import HELD_STATES, Job, JobState
from portal_jobs.v1.infra.jobs.queues import JobQueue, QueuePolicy, QueueRouter, QueueSlots
from portal_jobs.v1.infra.jobs.retry import RetryPolicy
from portal_jobs.v1.infra.jobs.telemetry import TelemetryEmitter, default_emitter

logger = get_logger(__name__)

# Failures of the store itself; loops back off and retry, anything else propagates
STORE_ERRORS = (SQLAlchemyError, OSError)

_JOB_CONTEXT_KEYS = ("job_id", "job_type", "queue", "attempt", "worker_id")


class JobWorker:
    """
    Store-backed job worker.

    Features:
    - One polling loop per queue, each with its own cadence and in-flight ceiling
    - Atomic claims through the ClaimCoordinator
    - Fleet-wide SCREENSHOT semaphore and AI-tagging budget throttle
    - Heartbeats, stale-claim reaper and backoff retries
    - Graceful shutdown with a cancellation signal for handlers
    """

    def __init__(
        self,
        settings: Settings,
        database: Database | None = None,
        registry: JobRegistry | None = None,
        notifier: EscalationNotifier | None = None,
        telemetry: TelemetryEmitter | None = None,
        queues: list[str] | None = None,
        rng: random.Random | None = None,
    ):
        self.settings = settings
        self.database = database or get_database(settings)
        self.registry = registry or job_registry
        self.telemetry = telemetry or default_emitter
        self.notifier = notifier or build_notifier(settings)
        self.worker_id = f"{socket.gethostname()}-{os.getpid()}-{id(self)}"

        self.router = QueueRouter(settings)
        self.slots = QueueSlots(self.router)
        self.claims = ClaimCoordinator(settings, self.telemetry)
        self.retry = RetryPolicy(settings, self.notifier, self.telemetry, rng)
        self.semaphore = ConcurrencySemaphore(settings, telemetry=self.telemetry)
        self.budget = BudgetThrottle(settings, self.notifier, self.telemetry)
        self.queues = [JobQueue(q) for q in (queues or settings.worker_queues)]

        self.running = False
        self.cancel_event = asyncio.Event()
        self.active_jobs: dict[int, asyncio.Task] = {}

    async def start(self) -> None:
        """Run every polling loop plus heartbeat and reaper until stopped."""
        if self.running:
            raise RuntimeError("Worker is already running")

        self.running = True
        self.cancel_event.clear()

        async with self.database.session() as session:
            await self.semaphore.ensure_slots(session)

        policies = self.router.policies([q.value for q in self.queues])
        logger.info(
            "Starting job worker",
            worker_id=self.worker_id,
            queues=[p.queue.value for p in policies],
            handlers=self.registry.list(),
        )

        try:
            await asyncio.gather(
                *(self._queue_loop(policy) for policy in policies),
                self._heartbeat_loop(),
                self._reaper_loop(),
            )
        except Exception:
            logger.exception("Worker crashed", worker_id=self.worker_id)
            raise
        finally:
            self.running = False

    async def stop(self) -> None:
        """Stop claiming, signal handlers, then cancel what outlives the grace period."""
        logger.info("Stopping job worker", worker_id=self.worker_id)
        self.running = False
        self.cancel_event.set()

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.shutdown_grace_s

        # A poll that was mid-claim can still dispatch, so wait on the live set
        while self.active_jobs:
            tasks = list(self.active_jobs.values())
            remaining = deadline - loop.time()
            if remaining > 0:
                await asyncio.wait(tasks, timeout=remaining)
                continue

            logger.warning(
                "Cancelling in-flight jobs after grace period",
                worker_id=self.worker_id,
                active_jobs=len(tasks),
                shutdown_grace_s=self.settings.shutdown_grace_s,
            )
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _sleep(self, seconds: float) -> None:
        """Sleep that ends early when shutdown is signalled."""
        try:
            await asyncio.wait_for(self.cancel_event.wait(), timeout=seconds)
        except TimeoutError:
            pass

    async def _queue_loop(self, policy: QueuePolicy) -> None:
        backoff = self.settings.poll_error_backoff_s

        while self.running:
            try:
                claimed = await self.poll_once(policy.queue)
            except STORE_ERRORS:
                logger.exception(
                    "Store error in polling loop",
                    worker_id=self.worker_id,
                    queue=policy.queue.value,
                    backoff_s=backoff,
                )
                await self._sleep(backoff)
                backoff = min(backoff * 2, self.settings.poll_error_backoff_max_s)
                continue

            backoff = self.settings.poll_error_backoff_s
            if claimed == 0:
                await self._sleep(policy.poll_interval_s)

    async def poll_once(self, queue: JobQueue | str) -> int:
        """
        Claim jobs from one queue up to its in-flight ceiling.

        Each claimed job is dispatched as its own task. Returns the number of
        jobs claimed.
        """
        queue = JobQueue(queue)
        claimed = 0

        while not self.cancel_event.is_set() and self.slots.try_reserve(queue):
            job = None
            try:
                async with self.database.session() as session:
                    job = await self.claims.claim_next(session, queue, self.worker_id)
                    if job is not None and self.cancel_event.is_set():
                        # Shutdown began while the claim was in flight
                        claimed_job, job = job, None
                        await self.claims.release(
                            session,
                            claimed_job,
                            self.worker_id,
                            run_after=utcnow(),
                            reason="shutdown",
                            restore_attempt=True,
                        )
            finally:
                if job is None:
                    self.slots.release(queue)

            if job is None:
                break

            self._dispatch(job)
            claimed += 1

        return claimed

    def _dispatch(self, job: Job) -> None:
        task = asyncio.create_task(self._run_job(job), name=f"job-{job.id}")
        self.active_jobs[job.id] = task
        task.add_done_callback(lambda t, job=job: self._job_done(job, t))

    def _job_done(self, job: Job, task: asyncio.Task) -> None:
        self.active_jobs.pop(job.id, None)
        self.slots.release(JobQueue(job.queue))

        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "Job task crashed",
                job_id=job.id,
                worker_id=self.worker_id,
                exc_info=error,
            )

    async def drain(self) -> None:
        """Wait for every dispatched job task to finish."""
        while self.active_jobs:
            await asyncio.wait(list(self.active_jobs.values()))

    async def _run_job(self, job: Job) -> None:
        bind_job_context(
            job_id=job.id,
            job_type=job.job_type,
            queue=job.queue,
            attempt=job.attempt_count,
            worker_id=self.worker_id,
        )
        try:
            await self._process_job(job)
        except asyncio.CancelledError:
            logger.warning("Job cancelled during shutdown")
            await asyncio.shield(self._release_cancelled(job))
            raise
        except STORE_ERRORS:
            # The claim stays held until the reaper recovers it
            logger.exception("Store error while processing job")
        finally:
            clear_job_context(*_JOB_CONTEXT_KEYS)

    async def _release_cancelled(self, job: Job) -> None:
        """
        Settle a job whose task was cancelled at shutdown.

        The row is re-read because the task may have moved it past CLAIMED.
        A claim that never started gets its attempt back. An interrupted run
        keeps its attempt, and on the final attempt it counts as a failure.
        """
        try:
            async with self.database.session() as session:
                current = await session.get(Job, job.id, populate_existing=True)
                if (
                    current is None
                    or current.locked_by != self.worker_id
                    or current.state not in HELD_STATES
                ):
                    return

                running = current.state == JobState.RUNNING.value
                if running and current.attempts_exhausted():
                    await self.retry.on_failure(
                        session,
                        current,
                        TransientFailure("Interrupted by worker shutdown on the final attempt"),
                    )
                    return

                await self.claims.release(
                    session,
                    current,
                    self.worker_id,
                    run_after=utcnow(),
                    reason="cancelled",
                    restore_attempt=not running,
                )
        except STORE_ERRORS:
            logger.exception("Could not release cancelled job", job_id=job.id)

    async def _process_job(self, job: Job) -> None:
        """Admit, execute and settle one claimed job."""
        if job.job_type not in self.registry:
            logger.error("No handler registered for job type")
            async with self.database.session() as session:
                await self.retry.on_failure(
                    session,
                    job,
                    PermanentFailure(f"No handler registered for job type: {job.job_type}"),
                )
            return

        registration = self.registry.get(job.job_type)
        context = ExecutionContext(
            job_id=job.id,
            job_type=job.job_type,
            queue=job.queue,
            attempt=job.attempt_count,
            max_attempts=job.max_attempts,
            worker_id=self.worker_id,
            cancel_event=self.cancel_event,
        )
        holds_slot = False

        try:
            if job.queue == JobQueue.SCREENSHOT.value:
                async with self.database.session() as session:
                    holds_slot = await self.semaphore.acquire(
                        session, job.id, job.job_type
                    )
                if not holds_slot:
                    await self._defer(
                        job,
                        utcnow() + timedelta(seconds=self.settings.screenshot_defer_s),
                        "semaphore_timeout",
                    )
                    return

            if self.budget.governs(job.job_type):
                async with self.database.session() as session:
                    admission = await self.budget.evaluate(session, job)
                if not admission.admitted:
                    await self._defer(
                        job, admission.run_after, f"budget_{admission.decision.value}"
                    )
                    return
                context.hints.update(admission.hints)

            if self.cancel_event.is_set():
                await self._defer(job, utcnow(), "shutdown")
                return

            async with self.database.session() as session:
                running = await self.claims.mark_running(session, job, self.worker_id)
            if running is None:
                return

            await self._execute(running, registration, context)
        finally:
            if holds_slot:
                async with self.database.session() as session:
                    await self.semaphore.release(session, job.id)

    async def _execute(self, job: Job, registration: Any, context: ExecutionContext) -> None:
        logger.info("Processing job started")
        try:
            result = await execute_handler(registration, job.payload, context)
        except AdmissionDeferred as deferral:
            run_after = deferral.run_after or utcnow() + timedelta(
                seconds=(
                    deferral.delay_s
                    if deferral.delay_s is not None
                    else self.settings.handler_defer_s
                )
            )
            logger.info("Handler deferred job", reason=deferral.message)
            await self._defer(job, run_after, "handler_deferred")
        except Exception as e:
            logger.warning(
                "Job handler failed", error=str(e), error_type=type(e).__name__
            )
            async with self.database.session() as session:
                await self.retry.on_failure(session, job, e)
        else:
            async with self.database.session() as session:
                await self.retry.on_success(session, job)
            logger.info("Processing job completed successfully", result=result)
        finally:
            await self._record_spend(job, context)

    async def _defer(self, job: Job, run_after, reason: str) -> None:
        async with self.database.session() as session:
            await self.claims.release(
                session, job, self.worker_id, run_after, reason, restore_attempt=True
            )

    async def _record_spend(self, job: Job, context: ExecutionContext) -> None:
        if not context.total_cost:
            return
        if not self.budget.governs(job.job_type):
            logger.warning(
                "Ignoring cost reported by ungoverned job type", cost_cents=context.total_cost
            )
            return
        async with self.database.session() as session:
            await self.budget.record_spend(session, context.total_cost)

    async def _heartbeat_loop(self) -> None:
        """Refresh liveness of every job this worker holds."""
        while self.running:
            await self._sleep(self.settings.heartbeat_interval_s)
            if not self.active_jobs:
                continue
            try:
                async with self.database.session() as session:
                    await self.claims.heartbeat(
                        session, list(self.active_jobs), self.worker_id
                    )
            except STORE_ERRORS:
                logger.exception("Error updating heartbeats", worker_id=self.worker_id)

    async def _reaper_loop(self) -> None:
        backoff = self.settings.poll_error_backoff_s

        while self.running:
            try:
                await self.reap_once()
            except STORE_ERRORS:
                logger.exception("Error in stale claim reaper", worker_id=self.worker_id)
                await self._sleep(backoff)
                backoff = min(backoff * 2, self.settings.poll_error_backoff_max_s)
                continue

            backoff = self.settings.poll_error_backoff_s
            await self._sleep(self.settings.reaper_interval_s)

    async def reap_once(self) -> ReapResult:
        """Recover stale claims and free orphaned semaphore slots."""
        async with self.database.session() as session:
            reaped = await self.claims.reap_stale(session)

            for job in reaped.exhausted:
                await self.retry.on_failure(
                    session,
                    job,
                    StaleClaimRecovered(
                        f"Claim by {job.locked_by} went stale on the final attempt"
                    ),
                )

            await self.semaphore.reap_orphans(session)
        return reaped


# Worker instance management
_worker_instance: JobWorker | None = None


def get_worker(settings: Settings, **kwargs: Any) -> JobWorker:
    """Get or create the process-wide worker instance."""
    global _worker_instance
    if _worker_instance is None:
        _worker_instance = JobWorker(settings, **kwargs)
    return _worker_instance
