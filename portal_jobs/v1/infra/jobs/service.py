"""
Job service: submission, lookup and queue statistics.
"""

from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import and_, func, select, true
from sqlalchemy.ext.asyncio import AsyncSession

from portal_jobs.config.logging import get_logger
from portal_jobs.config.settings import Settings
from portal_jobs.infra.database import utcnow
from portal_jobs.v1.core.exceptions import InvalidJobType, JobNotFoundError
from portal_jobs.v1.core.registries import JobRegistry, job_registry
from portal_jobs.v1.infra.jobs.claims import stale_condition
from portal_jobs.v1.infra.jobs.models import HELD_STATES, Job, JobState
from portal_jobs.v1.infra.jobs.queues import JobQueue, QueueRouter
from portal_jobs.v1.infra.jobs.schemas import (
    JobCreate,
    JobEnqueueResponse,
    JobStatsResponse,
)

logger = get_logger(__name__)


class JobService:
    """Service for submitting and inspecting jobs."""

    def __init__(self, settings: Settings, registry: JobRegistry | None = None):
        self.settings = settings
        self.registry = registry or job_registry
        self.router = QueueRouter(settings)

    async def submit(
        self,
        session: AsyncSession,
        job_type: str,
        payload: dict[str, Any] | None = None,
        max_attempts: int | None = None,
        run_after: datetime | None = None,
    ) -> int:
        """
        Persist a new PENDING job and return its id.

        Raises:
            InvalidJobType: no handler is registered for job_type
        """
        if job_type not in self.registry:
            raise InvalidJobType(job_type)
        if max_attempts is not None and max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        registration = self.registry.get(job_type)
        route = self.router.route(job_type, registration.queue_hint)

        if run_after is not None and run_after.tzinfo is None:
            run_after = run_after.replace(tzinfo=UTC)

        now = utcnow()
        job = Job(
            queue=route.queue.value,
            job_type=job_type,
            payload=payload or {},
            priority=route.priority_weight,
            state=JobState.PENDING.value,
            attempt_count=0,
            max_attempts=max_attempts or route.max_attempts,
            run_after=run_after or now,
            failures=[],
            created_at=now,
            updated_at=now,
        )
        session.add(job)
        await session.commit()

        logger.info(
            "Job submitted",
            job_id=job.id,
            job_type=job_type,
            queue=job.queue,
            max_attempts=job.max_attempts,
            run_after=job.run_after.isoformat(),
        )
        return job.id

    async def enqueue_job(
        self, session: AsyncSession, job_create: JobCreate
    ) -> JobEnqueueResponse:
        """Submit from an API payload."""
        job_id = await self.submit(
            session,
            job_create.job_type,
            job_create.payload,
            max_attempts=job_create.max_attempts,
            run_after=job_create.run_after,
        )
        job = await self.get_job_by_id(session, job_id)
        return JobEnqueueResponse(job_id=job.id, queue=job.queue, state=job.state)

    async def get_job_by_id(self, session: AsyncSession, job_id: int) -> Job:
        result = await session.execute(
            select(Job)
            .where(Job.id == job_id)
            .execution_options(populate_existing=True)
        )
        job = result.scalar_one_or_none()
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def list_jobs(
        self,
        session: AsyncSession,
        state: str | None = None,
        queue: str | None = None,
        job_type: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Job], int]:
        """List jobs newest first, with the total matching count."""
        filters = []
        if state:
            filters.append(Job.state == JobState(state.upper()).value)
        if queue:
            filters.append(Job.queue == JobQueue(queue.upper()).value)
        if job_type:
            filters.append(Job.job_type == job_type)
        condition = and_(true(), *filters)

        total_result = await session.execute(
            select(func.count(Job.id)).where(condition)
        )
        total = total_result.scalar() or 0

        result = await session.execute(
            select(Job)
            .where(condition)
            .order_by(Job.id.desc())
            .limit(limit)
            .offset(offset)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all()), total

    async def get_job_stats(
        self, session: AsyncSession, now: datetime | None = None
    ) -> JobStatsResponse:
        """Counts by state, queue and type plus backlog health."""
        now = now or utcnow()

        total_result = await session.execute(select(func.count(Job.id)))
        total_jobs = total_result.scalar() or 0

        state_result = await session.execute(
            select(Job.state, func.count(Job.id)).group_by(Job.state)
        )
        by_state = dict(state_result.all())

        queue_result = await session.execute(
            select(Job.queue, func.count(Job.id)).group_by(Job.queue)
        )
        by_queue = dict(queue_result.all())

        type_result = await session.execute(
            select(Job.job_type, func.count(Job.id)).group_by(Job.job_type)
        )
        by_type = dict(type_result.all())

        # Claimable right now
        depth_result = await session.execute(
            select(Job.queue, func.count(Job.id))
            .where(
                and_(Job.state == JobState.PENDING.value, Job.run_after <= now)
            )
            .group_by(Job.queue)
        )
        queue_depth = {q.value: 0 for q in JobQueue}
        queue_depth.update(dict(depth_result.all()))

        cutoff = now - timedelta(seconds=self.settings.liveness_threshold_s)
        stale_result = await session.execute(
            select(func.count(Job.id)).where(
                and_(Job.state.in_(HELD_STATES), stale_condition(cutoff))
            )
        )
        stale_claims = stale_result.scalar() or 0

        dead_result = await session.execute(
            select(func.count(Job.id)).where(
                and_(
                    Job.state == JobState.DEAD.value,
                    Job.completed_at >= now - timedelta(hours=1),
                )
            )
        )
        dead_last_hour = dead_result.scalar() or 0

        return JobStatsResponse(
            total_jobs=total_jobs,
            by_state=by_state,
            by_queue=by_queue,
            by_type=by_type,
            queue_depth=queue_depth,
            stale_claims=stale_claims,
            dead_last_hour=dead_last_hour,
        )
