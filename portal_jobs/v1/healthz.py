from datetime import timedelta

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import and_, func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from portal_jobs.config.logging import get_logger
from portal_jobs.config.settings import Settings, SettingsDep
from portal_jobs.infra.database import get_session, utcnow
from portal_jobs.v1.core.exceptions import create_success_response
from portal_jobs.v1.infra.jobs.claims import stale_condition
from portal_jobs.v1.infra.jobs.models import HELD_STATES, Job, JobState

logger = get_logger(__name__)
router = APIRouter()


class DatabaseHealth(BaseModel):
    """Database health status."""

    connected: bool
    response_time_ms: float | None = None
    error: str | None = None


class WorkerHealth(BaseModel):
    """Worker fleet health derived from claim heartbeats."""

    active_workers: int
    last_heartbeat_age_seconds: int | None = None
    stale_claims: int = 0
    pending_jobs: int = 0


@router.get("/healthz", response_model=dict)
async def health_check(
    settings: Settings = SettingsDep, session: AsyncSession = Depends(get_session)
):
    """Health check with database and worker fleet status."""

    db_health = await _check_database_health(session)

    worker_health = None
    if db_health.connected:
        worker_health = await _check_worker_health(session, settings)

    health_data = {
        "ok": db_health.connected,
        "version": settings.version,
        "environment": settings.environment,
        "timestamp": utcnow().isoformat(),
        "database": db_health.model_dump(),
        "worker": worker_health.model_dump() if worker_health else None,
    }

    return create_success_response(data=health_data)


async def _check_database_health(session: AsyncSession) -> DatabaseHealth:
    """Check database connectivity and response time."""
    start_time = utcnow()

    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.warning("Database health check failed", error=str(e))
        await session.rollback()
        return DatabaseHealth(connected=False, error=str(e))

    response_time_ms = (utcnow() - start_time).total_seconds() * 1000
    return DatabaseHealth(connected=True, response_time_ms=round(response_time_ms, 2))


async def _check_worker_health(
    session: AsyncSession, settings: Settings
) -> WorkerHealth:
    """Count live claim holders, stale claims and waiting jobs."""
    now = utcnow()
    cutoff = now - timedelta(seconds=settings.liveness_threshold_s)

    active_workers_result = await session.execute(
        select(func.count(func.distinct(Job.locked_by))).where(
            and_(Job.state.in_(HELD_STATES), Job.heartbeat_at > cutoff)
        )
    )
    active_workers = active_workers_result.scalar() or 0

    last_heartbeat_result = await session.execute(
        select(func.max(Job.heartbeat_at)).where(Job.state.in_(HELD_STATES))
    )
    last_heartbeat = last_heartbeat_result.scalar()

    last_heartbeat_age_seconds = None
    if last_heartbeat:
        last_heartbeat_age_seconds = int((now - last_heartbeat).total_seconds())

    stale_result = await session.execute(
        select(func.count(Job.id)).where(
            and_(Job.state.in_(HELD_STATES), stale_condition(cutoff))
        )
    )

    pending_result = await session.execute(
        select(func.count(Job.id)).where(Job.state == JobState.PENDING.value)
    )

    return WorkerHealth(
        active_workers=active_workers,
        last_heartbeat_age_seconds=last_heartbeat_age_seconds,
        stale_claims=stale_result.scalar() or 0,
        pending_jobs=pending_result.scalar() or 0,
    )
