"""
Atomic cross-process job claiming and stale-claim recovery.

Candidates are read with SELECT ... FOR UPDATE SKIP LOCKED so concurrent
pollers step over rows another claimer is touching, and each claim is a
compare-and-set UPDATE fenced on the PENDING state. The fence alone keeps
claims exclusive on engines without row locks (SQLite).
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from portal_jobs.config.logging import get_logger
from portal_jobs.config.settings import Settings
from portal_jobs.infra.database import utcnow
from portal_jobs.v1.core.exceptions import StaleClaimRecovered
from portal_jobs.v1.infra.jobs.models import HELD_STATES, Job, JobState
from portal_jobs.v1.infra.jobs.queues import JobQueue
from portal_jobs.v1.infra.jobs.telemetry import (
    TelemetryEmitter,
    default_emitter,
    transition_event,
)

logger = get_logger(__name__)

# Rows inspected per claim; losers of a race move on to the next candidate
CLAIM_SCAN_LIMIT = 5


@dataclass
class ReapResult:
    recovered: list[int] = field(default_factory=list)
    # RUNNING claims with no attempts left; these go through the retry policy
    exhausted: list[Job] = field(default_factory=list)


def stale_condition(cutoff: datetime):
    return or_(
        and_(Job.heartbeat_at.is_(None), Job.locked_at < cutoff),
        Job.heartbeat_at < cutoff,
    )


class ClaimCoordinator:
    """Claims, transitions and releases jobs on behalf of workers."""

    def __init__(self, settings: Settings, telemetry: TelemetryEmitter | None = None):
        self.settings = settings
        self.telemetry = telemetry or default_emitter

    async def claim_next(
        self,
        session: AsyncSession,
        queue: JobQueue | str,
        worker_id: str,
        now: datetime | None = None,
    ) -> Job | None:
        """
        Claim the oldest eligible job in a queue.

        Returns the claimed job (state CLAIMED, attempt_count incremented) or
        None when nothing is eligible.
        """
        now = now or utcnow()
        queue = JobQueue(queue)

        candidates = await session.execute(
            select(Job.id)
            .where(
                and_(
                    Job.queue == queue.value,
                    Job.state == JobState.PENDING.value,
                    Job.run_after <= now,
                )
            )
            .order_by(Job.run_after, Job.id)
            .limit(CLAIM_SCAN_LIMIT)
            .with_for_update(skip_locked=True)
        )
        job_ids = list(candidates.scalars().all())

        for job_id in job_ids:
            result = await session.execute(
                update(Job)
                .where(and_(Job.id == job_id, Job.state == JobState.PENDING.value))
                .values(
                    state=JobState.CLAIMED.value,
                    locked_by=worker_id,
                    locked_at=now,
                    heartbeat_at=None,
                    attempt_count=Job.attempt_count + 1,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                await session.commit()
                job = await session.get(Job, job_id, populate_existing=True)

                logger.info(
                    "Claimed job",
                    job_id=job.id,
                    job_type=job.job_type,
                    queue=queue.value,
                    worker_id=worker_id,
                    attempt=job.attempt_count,
                )
                self.telemetry.transition(
                    transition_event(
                        job, JobState.PENDING, JobState.CLAIMED, "claimed", worker_id
                    )
                )
                return job

        await session.commit()
        return None

    async def mark_running(
        self, session: AsyncSession, job: Job, worker_id: str
    ) -> Job | None:
        """Move an admitted job from CLAIMED to RUNNING; None if the claim was lost."""
        now = utcnow()
        result = await session.execute(
            update(Job)
            .where(
                and_(
                    Job.id == job.id,
                    Job.state == JobState.CLAIMED.value,
                    Job.locked_by == worker_id,
                )
            )
            .values(state=JobState.RUNNING.value, heartbeat_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await session.commit()

        if result.rowcount != 1:
            logger.warning(
                "Claim lost before execution", job_id=job.id, worker_id=worker_id
            )
            return None

        running = await session.get(Job, job.id, populate_existing=True)
        self.telemetry.transition(
            transition_event(
                running, JobState.CLAIMED, JobState.RUNNING, "started", worker_id
            )
        )
        return running

    async def release(
        self,
        session: AsyncSession,
        job: Job,
        worker_id: str,
        run_after: datetime,
        reason: str,
        restore_attempt: bool = True,
    ) -> bool:
        """
        Hand a held job back to PENDING without recording a failure.

        Used for governor deferrals and cancellation. run_after never moves
        backwards; restore_attempt gives back the attempt taken by the claim.
        """
        now = utcnow()
        next_run = max(job.run_after, run_after)
        values = {
            "state": JobState.PENDING.value,
            "locked_by": None,
            "locked_at": None,
            "heartbeat_at": None,
            "run_after": next_run,
            "updated_at": now,
        }
        if restore_attempt:
            values["attempt_count"] = Job.attempt_count - 1

        result = await session.execute(
            update(Job)
            .where(
                and_(
                    Job.id == job.id,
                    Job.state.in_(HELD_STATES),
                    Job.locked_by == worker_id,
                )
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await session.commit()

        if result.rowcount != 1:
            return False

        logger.info(
            "Released job",
            job_id=job.id,
            reason=reason,
            run_after=next_run.isoformat(),
            restore_attempt=restore_attempt,
        )
        self.telemetry.transition(
            transition_event(
                job,
                JobState(job.state),
                JobState.PENDING,
                reason,
                worker_id,
                run_after=next_run.isoformat(),
            )
        )
        return True

    async def heartbeat(
        self, session: AsyncSession, job_ids: list[int], worker_id: str
    ) -> int:
        """Refresh liveness of every job this worker still holds."""
        if not job_ids:
            return 0

        result = await session.execute(
            update(Job)
            .where(
                and_(
                    Job.id.in_(job_ids),
                    Job.locked_by == worker_id,
                    Job.state.in_(HELD_STATES),
                )
            )
            .values(heartbeat_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        return result.rowcount

    async def reap_stale(
        self, session: AsyncSession, now: datetime | None = None
    ) -> ReapResult:
        """Reset claims whose holder stopped heartbeating within the liveness window."""
        now = now or utcnow()
        cutoff = now - timedelta(seconds=self.settings.liveness_threshold_s)
        reaped = ReapResult()

        stale = await session.execute(
            select(Job)
            .where(and_(Job.state.in_(HELD_STATES), stale_condition(cutoff)))
            .order_by(Job.id)
            .execution_options(populate_existing=True)
        )

        for job in stale.scalars().all():
            if job.state == JobState.RUNNING.value and job.attempts_exhausted():
                reaped.exhausted.append(job)
                continue

            # A claim that never reached RUNNING did not consume its attempt
            restore = job.state == JobState.CLAIMED.value
            error = StaleClaimRecovered(
                f"Claim by {job.locked_by} expired after "
                f"{self.settings.liveness_threshold_s:g}s without heartbeat"
            )
            values = {
                "state": JobState.PENDING.value,
                "locked_by": None,
                "locked_at": None,
                "heartbeat_at": None,
                "run_after": max(job.run_after, now),
                "last_error": error.message,
                "error_category": error.category,
                "updated_at": now,
            }
            if restore:
                values["attempt_count"] = Job.attempt_count - 1

            result = await session.execute(
                update(Job)
                .where(
                    and_(
                        Job.id == job.id,
                        Job.state == job.state,
                        Job.locked_by == job.locked_by,
                        stale_condition(cutoff),
                    )
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                continue

            reaped.recovered.append(job.id)
            logger.warning(
                "Recovered stale claim",
                job_id=job.id,
                job_type=job.job_type,
                previous_state=job.state,
                previous_holder=job.locked_by,
                error_category=error.category,
            )
            self.telemetry.transition(
                transition_event(
                    job,
                    JobState(job.state),
                    JobState.PENDING,
                    "stale_claim_recovered",
                    job.locked_by,
                )
            )

        await session.commit()

        if reaped.recovered or reaped.exhausted:
            logger.warning(
                "Reaped stale claims",
                recovered_count=len(reaped.recovered),
                exhausted_count=len(reaped.exhausted),
                liveness_threshold_s=self.settings.liveness_threshold_s,
            )
        return reaped
