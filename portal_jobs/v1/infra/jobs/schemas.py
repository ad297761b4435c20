"""
Job system Pydantic schemas: API payloads and collaborator events.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from portal_jobs.v1.infra.jobs.models import JobState


class JobCreate(BaseModel):
    """Schema for submitting a new job."""

    job_type: str = Field(..., min_length=1, description="Job type identifier")
    payload: dict[str, Any] = Field(default_factory=dict, description="Job arguments")
    max_attempts: int | None = Field(
        default=None, ge=1, description="Attempt ceiling, defaults per queue"
    )
    run_after: datetime | None = Field(
        default=None, description="Earliest time to run job"
    )


class JobEnqueueResponse(BaseModel):
    """Schema for job submission response."""

    job_id: int
    queue: str
    state: str


class JobResponse(BaseModel):
    """Schema for job API responses."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    queue: str
    job_type: str
    payload: dict[str, Any]
    priority: int
    state: str
    attempt_count: int
    max_attempts: int
    run_after: datetime

    # Worker coordination
    locked_by: str | None = None
    locked_at: datetime | None = None
    heartbeat_at: datetime | None = None

    # Diagnostics
    last_error: str | None = None
    error_category: str | None = None
    failures: list[dict[str, Any]] = Field(default_factory=list)
    first_failed_at: datetime | None = None

    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None


class JobListResponse(BaseModel):
    """Schema for job list API response."""

    jobs: list[JobResponse]
    total: int
    limit: int
    offset: int


class JobStatsResponse(BaseModel):
    """Schema for job statistics."""

    total_jobs: int
    by_state: dict[str, int]
    by_queue: dict[str, int]
    by_type: dict[str, int]
    queue_depth: dict[str, int]  # claimable now, per queue
    stale_claims: int
    dead_last_hour: int


class BudgetStatusResponse(BaseModel):
    """Current billing period of a budget ledger."""

    name: str
    period_start: datetime
    next_period_start: datetime
    ceiling_cents: int
    spent_cents: int
    remaining_cents: int
    ratio: float
    alert_level: int
    decision: str


class TransitionEvent(BaseModel):
    """One job state transition, as handed to the telemetry emitter."""

    job_id: int
    job_type: str
    queue: str
    attempt: int
    from_state: JobState | None
    to_state: JobState
    outcome: str
    worker_id: str | None = None
    at: datetime
    attributes: dict[str, Any] = Field(default_factory=dict)


class EscalationEvent(BaseModel):
    """Structured failure event delivered once per DEAD transition."""

    job_id: int
    job_type: str
    queue: str
    attempts: int
    last_error: str | None
    first_failed_at: datetime | None
    attempt_history: list[dict[str, Any]] = Field(default_factory=list)


class BudgetAlert(BaseModel):
    """Threshold-crossing alert for a budget ledger."""

    ledger: str
    level: str  # WARNING | CRITICAL | EMERGENCY
    threshold: int
    ratio: float
    spent_cents: int
    ceiling_cents: int
    period_start: datetime
    action: str
