"""
Job administration API endpoints.

Submission, inspection, queue statistics, budget status and telemetry counters.
"""

from typing import Any

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from portal_jobs.config.logging import get_logger
from portal_jobs.config.settings import Settings, SettingsDep
from portal_jobs.infra.database import get_session
from portal_jobs.v1.core.exceptions import ValidationError, create_success_response
from portal_jobs.v1.infra.jobs.governors import BudgetThrottle
from portal_jobs.v1.infra.jobs.models import JobState
from portal_jobs.v1.infra.jobs.queues import JobQueue
from portal_jobs.v1.infra.jobs.schemas import JobCreate, JobListResponse, JobResponse
from portal_jobs.v1.infra.jobs.service import JobService
from portal_jobs.v1.infra.jobs.telemetry import default_emitter

logger = get_logger(__name__)
router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.post("", response_model=dict)
async def submit_job(
    job_create: JobCreate,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Submit a new background job."""

    job_service = JobService(settings)
    result = await job_service.enqueue_job(session, job_create)

    logger.info(
        "Job submitted via API",
        job_id=result.job_id,
        job_type=job_create.job_type,
        queue=result.queue,
    )

    return create_success_response(data=result.model_dump())


@router.get("", response_model=dict)
async def list_jobs(
    state: str | None = Query(default=None, description="Filter by state"),
    queue: str | None = Query(default=None, description="Filter by queue"),
    job_type: str | None = Query(default=None, description="Filter by job type"),
    limit: int = Query(default=50, ge=1, le=1000, description="Maximum results"),
    offset: int = Query(default=0, ge=0, description="Results offset"),
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """List jobs with filtering and pagination."""

    if state and state.upper() not in JobState.__members__:
        raise ValidationError(f"Unknown job state: {state}", {"state": state})
    if queue and queue.upper() not in JobQueue.__members__:
        raise ValidationError(f"Unknown queue: {queue}", {"queue": queue})

    job_service = JobService(settings)
    jobs, total = await job_service.list_jobs(
        session,
        state=state,
        queue=queue,
        job_type=job_type,
        limit=limit,
        offset=offset,
    )

    response_data = JobListResponse(
        jobs=[JobResponse.model_validate(job) for job in jobs],
        total=total,
        limit=limit,
        offset=offset,
    )

    return create_success_response(data=response_data.model_dump(mode="json"))


@router.get("/stats/overview", response_model=dict)
async def get_job_stats(
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Get job statistics across all queues."""

    job_service = JobService(settings)
    stats = await job_service.get_job_stats(session)

    return create_success_response(data=stats.model_dump())


@router.get("/budget", response_model=dict)
async def get_budget_status(
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Current billing period of the AI-tagging budget."""

    status = await BudgetThrottle(settings).status(session)
    return create_success_response(data=status.model_dump(mode="json"))


@router.get("/telemetry", response_model=dict)
async def get_telemetry() -> dict[str, Any]:
    """Transition and governor decision counters of this process."""
    return create_success_response(data=default_emitter.snapshot())


@router.get("/{job_id}", response_model=dict)
async def get_job(
    job_id: int,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Get a specific job by ID."""

    job_service = JobService(settings)
    job = await job_service.get_job_by_id(session, job_id)

    return create_success_response(
        data=JobResponse.model_validate(job).model_dump(mode="json")
    )
