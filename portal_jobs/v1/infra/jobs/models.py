"""
Job orchestration models: job records, budget ledgers and semaphore slots.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    Index,
    Integer,
    SmallInteger,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from portal_jobs.infra.database import Base, UTCDateTime, utcnow

# BIGINT identity on PostgreSQL, rowid alias on SQLite
JobId = BigInteger().with_variant(Integer(), "sqlite")


class JobState(str, Enum):
    """Job state enumeration."""

    PENDING = "PENDING"
    CLAIMED = "CLAIMED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    DEAD = "DEAD"


HELD_STATES = (JobState.CLAIMED.value, JobState.RUNNING.value)

# Every transition the engine performs. CLAIMED -> PENDING covers governor
# deferrals, shutdown releases and reaped claims whose handler never started.
# CLAIMED -> DEAD is a job type with no registered handler.
LEGAL_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.PENDING: frozenset({JobState.CLAIMED}),
    JobState.CLAIMED: frozenset(
        {JobState.RUNNING, JobState.PENDING, JobState.DEAD}
    ),
    JobState.RUNNING: frozenset(
        {JobState.SUCCEEDED, JobState.PENDING, JobState.DEAD}
    ),
    JobState.SUCCEEDED: frozenset(),
    JobState.FAILED: frozenset(),
    JobState.DEAD: frozenset(),
}


def is_legal_transition(from_state: JobState, to_state: JobState) -> bool:
    return to_state in LEGAL_TRANSITIONS[from_state]


class Job(Base):
    """
    Durable job record.

    The single source of truth for state, payload and scheduling metadata.
    Workers coordinate exclusively through conditional updates on this row:
    - claim: PENDING -> CLAIMED with locked_by/locked_at
    - run: CLAIMED -> RUNNING by the claim holder
    - finish: RUNNING -> SUCCEEDED | PENDING (retry) | DEAD
    - give back: CLAIMED -> PENDING when admission is deferred
    """

    __tablename__ = "jobs"

    id: Mapped[int] = mapped_column(JobId, primary_key=True, autoincrement=True)
    queue: Mapped[str] = mapped_column(Text, nullable=False, comment="Queue family")
    job_type: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Handler registry key"
    )
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=dict, comment="Job arguments"
    )
    priority: Mapped[int] = mapped_column(
        SmallInteger,
        nullable=False,
        default=5,
        comment="Queue priority weight, lower is more urgent",
    )

    # Job state
    state: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=JobState.PENDING.value,
        comment="PENDING|CLAIMED|RUNNING|SUCCEEDED|FAILED|DEAD",
    )
    attempt_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="Claims made so far"
    )
    max_attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=5, comment="Attempt ceiling"
    )
    run_after: Mapped[datetime] = mapped_column(
        UTCDateTime,
        nullable=False,
        default=utcnow,
        comment="Earliest claim instant",
    )

    # Worker coordination
    locked_by: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Worker holding the claim"
    )
    locked_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True, comment="When the claim was taken"
    )
    heartbeat_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True, comment="Last liveness refresh by the holder"
    )

    # Failure diagnostics
    last_error: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Last failure message"
    )
    error_category: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="transient|permanent|stale_claim|..."
    )
    failures: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, nullable=False, default=list, comment="Attempt history"
    )
    first_failed_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, server_default=func.now()
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True, comment="Terminal transition instant"
    )

    __table_args__ = (
        CheckConstraint(
            "state IN ('PENDING', 'CLAIMED', 'RUNNING', 'SUCCEEDED', 'FAILED', 'DEAD')",
            name="jobs_state_check",
        ),
        CheckConstraint(
            "queue IN ('DEFAULT', 'HIGH', 'LOW', 'BULK', 'SCREENSHOT')",
            name="jobs_queue_check",
        ),
        CheckConstraint("max_attempts >= 1", name="jobs_max_attempts_check"),
        Index("ix_jobs_claim", "queue", "state", "run_after", "id"),
        Index("ix_jobs_state_locked_at", "state", "locked_at"),
        Index("ix_jobs_job_type_state", "job_type", "state"),
        Index("ix_jobs_completed_at", "completed_at"),
    )

    def attempts_exhausted(self) -> bool:
        return self.attempt_count >= self.max_attempts


class BudgetLedger(Base):
    """Metered spend for one billing period of one budget."""

    __tablename__ = "budget_ledgers"

    id: Mapped[int] = mapped_column(JobId, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False, comment="Budget key")
    period_start: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, comment="Start of the billing period"
    )
    ceiling_cents: Mapped[int] = mapped_column(
        BigInteger, nullable=False, comment="Spend ceiling for the period"
    )
    spent_cents: Mapped[int] = mapped_column(
        BigInteger, nullable=False, default=0, comment="Running total, only grows"
    )
    alert_level: Mapped[int] = mapped_column(
        SmallInteger,
        nullable=False,
        default=0,
        comment="Highest threshold percentage already alerted (0/75/90/100)",
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("name", "period_start", name="uq_budget_ledgers_period"),
        CheckConstraint("spent_cents >= 0", name="budget_ledgers_spent_check"),
    )

    def ratio(self) -> float:
        """Spent-to-ceiling ratio; an empty ceiling counts as exhausted."""
        if self.ceiling_cents <= 0:
            return float("inf")
        return self.spent_cents / self.ceiling_cents

    def remaining_cents(self) -> int:
        return self.ceiling_cents - self.spent_cents


class ResourceSlot(Base):
    """One permit of a store-backed counting semaphore."""

    __tablename__ = "resource_slots"

    resource: Mapped[str] = mapped_column(Text, primary_key=True)
    slot: Mapped[int] = mapped_column(SmallInteger, primary_key=True)
    holder_job_id: Mapped[int | None] = mapped_column(JobId, nullable=True)
    acquired_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
