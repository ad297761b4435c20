"""
Retry policy: terminal outcomes, backoff scheduling and dead-job escalation.
"""

import random
from datetime import datetime, timedelta

from sqlalchemy import and_, update
from sqlalchemy.ext.asyncio import AsyncSession

from portal_jobs.config.logging import get_logger
from portal_jobs.config.settings import Settings
from portal_jobs.infra.database import utcnow
from portal_jobs.v1.core.exceptions import JobError, PermanentFailure, TransientFailure
from portal_jobs.v1.infra.jobs.escalation import (
    EscalationNotifier,
    LoggingEscalationNotifier,
)
from portal_jobs.v1.infra.jobs.models import HELD_STATES, Job, JobState
from portal_jobs.v1.infra.jobs.schemas import EscalationEvent
from portal_jobs.v1.infra.jobs.telemetry import (
    TelemetryEmitter,
    default_emitter,
    transition_event,
)

logger = get_logger(__name__)

MAX_FAILURE_HISTORY = 20
MAX_ERROR_LENGTH = 2000

# 2**62 seconds is far beyond any sane cap
_MAX_EXPONENT = 62


class RetryPolicy:
    """Applies success and failure outcomes to jobs held by a worker."""

    def __init__(
        self,
        settings: Settings,
        notifier: EscalationNotifier | None = None,
        telemetry: TelemetryEmitter | None = None,
        rng: random.Random | None = None,
    ):
        self.settings = settings
        self.notifier = notifier or LoggingEscalationNotifier()
        self.telemetry = telemetry or default_emitter
        self.rng = rng or random.Random()

    def compute_delay(self, attempt: int) -> float:
        """
        Backoff in seconds after the given failed attempt.

        base * 2**attempt scaled by a jitter factor, then capped. With the
        jitter spread at most 2x, consecutive delays never decrease.
        """
        exponent = min(max(attempt, 0), _MAX_EXPONENT)
        jitter = self.rng.uniform(
            self.settings.retry_jitter_min, self.settings.retry_jitter_max
        )
        delay = self.settings.retry_base_delay_s * (2**exponent) * jitter
        return min(self.settings.retry_max_delay_s, delay)

    def _holder_fence(self, job: Job):
        return and_(
            Job.id == job.id,
            Job.state.in_(HELD_STATES),
            Job.locked_by == job.locked_by,
        )

    async def on_success(self, session: AsyncSession, job: Job) -> bool:
        """Mark a held job SUCCEEDED. Returns False if nothing changed."""
        now = utcnow()
        result = await session.execute(
            update(Job)
            .where(self._holder_fence(job))
            .values(
                state=JobState.SUCCEEDED.value,
                completed_at=now,
                locked_by=None,
                locked_at=None,
                heartbeat_at=None,
                last_error=None,
                error_category=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()

        if result.rowcount != 1:
            logger.debug("Success already recorded or claim lost", job_id=job.id)
            return False

        logger.info(
            "Job succeeded",
            job_id=job.id,
            job_type=job.job_type,
            attempt=job.attempt_count,
        )
        self.telemetry.transition(
            transition_event(
                job, JobState(job.state), JobState.SUCCEEDED, "succeeded", job.locked_by
            )
        )
        return True

    async def on_failure(
        self,
        session: AsyncSession,
        job: Job,
        error: BaseException,
        now: datetime | None = None,
    ) -> JobState | None:
        """
        Record a failed attempt.

        Permanent failures and exhausted attempts go to DEAD with one
        escalation; everything else is rescheduled with backoff. Returns the
        new state, or None when the worker no longer holds the claim.
        """
        now = now or utcnow()
        if not isinstance(error, JobError):
            error = TransientFailure(
                str(error) or type(error).__name__,
                details={"error_type": type(error).__name__},
            )

        message = (error.message or type(error).__name__)[:MAX_ERROR_LENGTH]
        record = {
            "attempt": job.attempt_count,
            "error": message,
            "category": error.category,
            "error_type": error.details.get("error_type", type(error).__name__),
            "worker_id": job.locked_by,
            "at": now.isoformat(),
        }
        failures = (list(job.failures or []) + [record])[-MAX_FAILURE_HISTORY:]
        first_failed_at = job.first_failed_at or now

        dead = isinstance(error, PermanentFailure) or job.attempts_exhausted()
        values = {
            "locked_by": None,
            "locked_at": None,
            "heartbeat_at": None,
            "last_error": message,
            "error_category": error.category,
            "failures": failures,
            "first_failed_at": first_failed_at,
            "updated_at": now,
        }
        if dead:
            new_state = JobState.DEAD
            values.update(state=new_state.value, completed_at=now)
        else:
            new_state = JobState.PENDING
            delay = self.compute_delay(job.attempt_count)
            values.update(state=new_state.value, run_after=now + timedelta(seconds=delay))

        result = await session.execute(
            update(Job)
            .where(self._holder_fence(job))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await session.commit()

        if result.rowcount != 1:
            logger.warning(
                "Failure not recorded, claim no longer held",
                job_id=job.id,
                error=message,
            )
            return None

        self.telemetry.transition(
            transition_event(
                job,
                JobState(job.state),
                new_state,
                "dead" if dead else "retry_scheduled",
                job.locked_by,
                error_category=error.category,
            )
        )

        if not dead:
            logger.warning(
                "Job failed, retry scheduled",
                job_id=job.id,
                job_type=job.job_type,
                attempt=job.attempt_count,
                max_attempts=job.max_attempts,
                run_after=values["run_after"].isoformat(),
                error=message,
            )
            return new_state

        logger.error(
            "Job dead",
            job_id=job.id,
            job_type=job.job_type,
            attempts=job.attempt_count,
            error_category=error.category,
            error=message,
        )
        await self.notifier.notify_dead_job(
            EscalationEvent(
                job_id=job.id,
                job_type=job.job_type,
                queue=job.queue,
                attempts=job.attempt_count,
                last_error=message,
                first_failed_at=first_failed_at,
                attempt_history=failures,
            )
        )
        return new_state
