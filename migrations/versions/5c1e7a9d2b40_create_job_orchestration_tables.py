"""create job orchestration tables

Revision ID: 5c1e7a9d2b40
Revises:
Create Date: 2026-10-19 09:12:41.528104

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "5c1e7a9d2b40"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "jobs",
        sa.Column("id", sa.BigInteger, sa.Identity(), primary_key=True),
        sa.Column("queue", sa.Text, nullable=False, comment="Queue family"),
        sa.Column("job_type", sa.Text, nullable=False, comment="Handler registry key"),
        sa.Column(
            "payload",
            sa.JSON,
            nullable=False,
            server_default=sa.text("'{}'"),
            comment="Job arguments",
        ),
        sa.Column(
            "priority",
            sa.SmallInteger,
            nullable=False,
            server_default="5",
            comment="Queue priority weight, lower is more urgent",
        ),
        sa.Column(
            "state",
            sa.Text,
            nullable=False,
            server_default="PENDING",
            comment="PENDING|CLAIMED|RUNNING|SUCCEEDED|FAILED|DEAD",
        ),
        sa.Column(
            "attempt_count",
            sa.Integer,
            nullable=False,
            server_default="0",
            comment="Claims made so far",
        ),
        sa.Column(
            "max_attempts",
            sa.Integer,
            nullable=False,
            server_default="5",
            comment="Attempt ceiling",
        ),
        sa.Column(
            "run_after",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
            comment="Earliest claim instant",
        ),
        # Worker coordination fields
        sa.Column("locked_by", sa.Text, nullable=True, comment="Worker holding the claim"),
        sa.Column(
            "locked_at",
            sa.TIMESTAMP(timezone=True),
            nullable=True,
            comment="When the claim was taken",
        ),
        sa.Column(
            "heartbeat_at",
            sa.TIMESTAMP(timezone=True),
            nullable=True,
            comment="Last liveness refresh by the holder",
        ),
        # Failure diagnostics
        sa.Column("last_error", sa.Text, nullable=True, comment="Last failure message"),
        sa.Column(
            "error_category",
            sa.Text,
            nullable=True,
            comment="transient|permanent|stale_claim|...",
        ),
        sa.Column(
            "failures",
            sa.JSON,
            nullable=False,
            server_default=sa.text("'[]'"),
            comment="Attempt history",
        ),
        sa.Column("first_failed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        # Timestamps
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "completed_at",
            sa.TIMESTAMP(timezone=True),
            nullable=True,
            comment="Terminal transition instant",
        ),
        sa.CheckConstraint(
            "state IN ('PENDING', 'CLAIMED', 'RUNNING', 'SUCCEEDED', 'FAILED', 'DEAD')",
            name="jobs_state_check",
        ),
        sa.CheckConstraint(
            "queue IN ('DEFAULT', 'HIGH', 'LOW', 'BULK', 'SCREENSHOT')",
            name="jobs_queue_check",
        ),
        sa.CheckConstraint("max_attempts >= 1", name="jobs_max_attempts_check"),
    )

    # Claim scan: oldest eligible job per queue
    op.create_index("ix_jobs_claim", "jobs", ["queue", "state", "run_after", "id"])
    # Stale-claim reaper
    op.create_index("ix_jobs_state_locked_at", "jobs", ["state", "locked_at"])
    op.create_index("ix_jobs_job_type_state", "jobs", ["job_type", "state"])
    op.create_index("ix_jobs_completed_at", "jobs", ["completed_at"])

    op.create_table(
        "budget_ledgers",
        sa.Column("id", sa.BigInteger, sa.Identity(), primary_key=True),
        sa.Column("name", sa.Text, nullable=False, comment="Budget key"),
        sa.Column(
            "period_start",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            comment="Start of the billing period",
        ),
        sa.Column(
            "ceiling_cents",
            sa.BigInteger,
            nullable=False,
            comment="Spend ceiling for the period",
        ),
        sa.Column(
            "spent_cents",
            sa.BigInteger,
            nullable=False,
            server_default="0",
            comment="Running total, only grows",
        ),
        sa.Column(
            "alert_level",
            sa.SmallInteger,
            nullable=False,
            server_default="0",
            comment="Highest threshold percentage already alerted (0/75/90/100)",
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.UniqueConstraint("name", "period_start", name="uq_budget_ledgers_period"),
        sa.CheckConstraint("spent_cents >= 0", name="budget_ledgers_spent_check"),
    )

    op.create_table(
        "resource_slots",
        sa.Column("resource", sa.Text, primary_key=True),
        sa.Column("slot", sa.SmallInteger, primary_key=True),
        sa.Column("holder_job_id", sa.BigInteger, nullable=True),
        sa.Column("acquired_at", sa.TIMESTAMP(timezone=True), nullable=True),
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table("resource_slots")
    op.drop_table("budget_ledgers")
    op.drop_index("ix_jobs_completed_at", table_name="jobs")
    op.drop_index("ix_jobs_job_type_state", table_name="jobs")
    op.drop_index("ix_jobs_state_locked_at", table_name="jobs")
    op.drop_index("ix_jobs_claim", table_name="jobs")
    op.drop_table("jobs")
