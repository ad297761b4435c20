"""
Resource governors consulted between claim and execution.

- ConcurrencySemaphore: fleet-wide counting semaphore backed by slot rows
- BudgetThrottle: tiered admission against a monthly spend ledger
"""

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from portal_jobs.config.logging import get_logger
from portal_jobs.config.settings import BudgetDeferScope, Settings
from portal_jobs.infra.database import utcnow
from portal_jobs.v1.infra.jobs.escalation import (
    EscalationNotifier,
    LoggingEscalationNotifier,
)
from portal_jobs.v1.infra.jobs.models import (
    HELD_STATES,
    BudgetLedger,
    Job,
    JobState,
    ResourceSlot,
)
from portal_jobs.v1.infra.jobs.schemas import BudgetAlert, BudgetStatusResponse
from portal_jobs.v1.infra.jobs.telemetry import TelemetryEmitter, default_emitter

logger = get_logger(__name__)

SCREENSHOT_RESOURCE = "screenshot"


class AdmissionDecision(str, Enum):
    ADMIT = "admit"
    ADMIT_REDUCED = "admit_reduced"
    DEFER = "defer"
    REJECT = "reject"


# Alert level raised when a decision tier is first reached in a period
ALERT_LEVELS: dict[AdmissionDecision, str] = {
    AdmissionDecision.ADMIT_REDUCED: "WARNING",
    AdmissionDecision.DEFER: "CRITICAL",
    AdmissionDecision.REJECT: "EMERGENCY",
}


@dataclass(frozen=True)
class Admission:
    """Outcome of a governor check."""

    decision: AdmissionDecision
    hints: dict[str, Any] = field(default_factory=dict)
    run_after: datetime | None = None
    reason: str | None = None

    @property
    def admitted(self) -> bool:
        return self.decision in (
            AdmissionDecision.ADMIT,
            AdmissionDecision.ADMIT_REDUCED,
        )


def period_start(now: datetime) -> datetime:
    """Start of the UTC calendar month containing now."""
    now = now.astimezone(UTC)
    return datetime(now.year, now.month, 1, tzinfo=UTC)


def next_period_start(now: datetime) -> datetime:
    start = period_start(now)
    if start.month == 12:
        return start.replace(year=start.year + 1, month=1)
    return start.replace(month=start.month + 1)


class ConcurrencySemaphore:
    """
    Counting semaphore shared by every worker through the store.

    Each permit is a resource_slots row; holding a permit means owning the
    row's holder_job_id. Acquisition is a compare-and-set on a free row.
    """

    def __init__(
        self,
        settings: Settings,
        resource: str = SCREENSHOT_RESOURCE,
        capacity: int | None = None,
        telemetry: TelemetryEmitter | None = None,
    ):
        self.settings = settings
        self.resource = resource
        self.capacity = capacity or settings.screenshot_concurrency
        self.telemetry = telemetry or default_emitter

    async def ensure_slots(self, session: AsyncSession) -> None:
        """Seed permit rows up to the configured capacity."""
        existing = await session.execute(
            select(ResourceSlot.slot).where(ResourceSlot.resource == self.resource)
        )
        present = set(existing.scalars().all())
        missing = [s for s in range(self.capacity) if s not in present]
        if not missing:
            return

        session.add_all(
            ResourceSlot(resource=self.resource, slot=s) for s in missing
        )
        try:
            await session.commit()
        except IntegrityError:
            # Another worker seeded the same slots first
            await session.rollback()

        logger.info(
            "Semaphore slots ready", resource=self.resource, capacity=self.capacity
        )

    async def try_acquire(self, session: AsyncSession, job_id: int) -> bool:
        """Take a free permit for the job without waiting."""
        held = await session.execute(
            select(ResourceSlot.slot).where(
                and_(
                    ResourceSlot.resource == self.resource,
                    ResourceSlot.holder_job_id == job_id,
                )
            )
        )
        if held.first() is not None:
            await session.commit()
            return True

        free = await session.execute(
            select(ResourceSlot.slot)
            .where(
                and_(
                    ResourceSlot.resource == self.resource,
                    ResourceSlot.slot < self.capacity,
                    ResourceSlot.holder_job_id.is_(None),
                )
            )
            .order_by(ResourceSlot.slot)
            .with_for_update(skip_locked=True)
        )

        for slot in free.scalars().all():
            result = await session.execute(
                update(ResourceSlot)
                .where(
                    and_(
                        ResourceSlot.resource == self.resource,
                        ResourceSlot.slot == slot,
                        ResourceSlot.holder_job_id.is_(None),
                    )
                )
                .values(holder_job_id=job_id, acquired_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                await session.commit()
                logger.debug(
                    "Acquired semaphore slot",
                    resource=self.resource,
                    slot=slot,
                    job_id=job_id,
                )
                return True

        await session.commit()
        return False

    async def acquire(
        self,
        session: AsyncSession,
        job_id: int,
        job_type: str,
        timeout_s: float | None = None,
    ) -> bool:
        """Wait up to timeout_s for a permit."""
        timeout_s = (
            self.settings.screenshot_acquire_timeout_s if timeout_s is None else timeout_s
        )
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_s

        while True:
            if await self.try_acquire(session, job_id):
                self.telemetry.governor_decision(
                    "semaphore", AdmissionDecision.ADMIT.value, job_type
                )
                return True

            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            await asyncio.sleep(min(self.settings.semaphore_poll_interval_s, remaining))

        logger.info(
            "Semaphore wait expired",
            resource=self.resource,
            job_id=job_id,
            timeout_s=timeout_s,
        )
        self.telemetry.governor_decision(
            "semaphore", AdmissionDecision.DEFER.value, job_type
        )
        return False

    async def release(self, session: AsyncSession, job_id: int) -> int:
        result = await session.execute(
            update(ResourceSlot)
            .where(
                and_(
                    ResourceSlot.resource == self.resource,
                    ResourceSlot.holder_job_id == job_id,
                )
            )
            .values(holder_job_id=None, acquired_at=None)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        return result.rowcount

    async def in_use(self, session: AsyncSession) -> int:
        result = await session.execute(
            select(func.count())
            .select_from(ResourceSlot)
            .where(
                and_(
                    ResourceSlot.resource == self.resource,
                    ResourceSlot.holder_job_id.is_not(None),
                )
            )
        )
        return result.scalar_one()

    async def reap_orphans(self, session: AsyncSession) -> int:
        """Free permits whose holder no longer holds a claim."""
        live_holders = select(Job.id).where(Job.state.in_(HELD_STATES))
        result = await session.execute(
            update(ResourceSlot)
            .where(
                and_(
                    ResourceSlot.resource == self.resource,
                    ResourceSlot.holder_job_id.is_not(None),
                    ResourceSlot.holder_job_id.not_in(live_holders),
                )
            )
            .values(holder_job_id=None, acquired_at=None)
            .execution_options(synchronize_session=False)
        )
        await session.commit()

        if result.rowcount:
            logger.warning(
                "Freed orphaned semaphore slots",
                resource=self.resource,
                count=result.rowcount,
            )
        return result.rowcount


class BudgetThrottle:
    """
    Tiered admission for metered job types.

    The ledger is read fresh for every evaluation, so spend recorded by any
    worker is visible to the next decision anywhere in the fleet.
    """

    def __init__(
        self,
        settings: Settings,
        notifier: EscalationNotifier | None = None,
        telemetry: TelemetryEmitter | None = None,
    ):
        self.settings = settings
        self.notifier = notifier or LoggingEscalationNotifier()
        self.telemetry = telemetry or default_emitter

    def governs(self, job_type: str) -> bool:
        return job_type in self.settings.budget_job_types

    def decide(self, ratio: float) -> AdmissionDecision:
        if ratio >= self.settings.budget_reject_threshold:
            return AdmissionDecision.REJECT
        if ratio >= self.settings.budget_defer_threshold:
            return AdmissionDecision.DEFER
        if ratio >= self.settings.budget_reduce_threshold:
            return AdmissionDecision.ADMIT_REDUCED
        return AdmissionDecision.ADMIT

    def threshold_for(self, decision: AdmissionDecision) -> int:
        """Alert threshold, as a percentage, of a decision tier."""
        return {
            AdmissionDecision.ADMIT: 0,
            AdmissionDecision.ADMIT_REDUCED: round(self.settings.budget_reduce_threshold * 100),
            AdmissionDecision.DEFER: round(self.settings.budget_defer_threshold * 100),
            AdmissionDecision.REJECT: round(self.settings.budget_reject_threshold * 100),
        }[decision]

    async def current_ledger(
        self, session: AsyncSession, now: datetime | None = None
    ) -> BudgetLedger:
        """Fetch this period's ledger, creating it on first use."""
        start = period_start(now or utcnow())
        query = (
            select(BudgetLedger)
            .where(
                and_(
                    BudgetLedger.name == self.settings.budget_ledger_name,
                    BudgetLedger.period_start == start,
                )
            )
            .execution_options(populate_existing=True)
        )

        result = await session.execute(query)
        ledger = result.scalar_one_or_none()
        if ledger is not None:
            return ledger

        session.add(
            BudgetLedger(
                name=self.settings.budget_ledger_name,
                period_start=start,
                ceiling_cents=self.settings.budget_ceiling_cents,
                spent_cents=0,
                alert_level=0,
            )
        )
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()

        result = await session.execute(query)
        ledger = result.scalar_one()
        logger.info(
            "Opened budget period",
            ledger=ledger.name,
            period_start=ledger.period_start.isoformat(),
            ceiling_cents=ledger.ceiling_cents,
        )
        return ledger

    async def evaluate(
        self, session: AsyncSession, job: Job, now: datetime | None = None
    ) -> Admission:
        """Decide whether a claimed metered job may run now."""
        now = now or utcnow()
        ledger = await self.current_ledger(session, now)
        ratio = ledger.ratio()
        decision = self.decide(ratio)

        if decision in ALERT_LEVELS:
            await self._raise_alert(session, ledger, decision, ratio)

        self.telemetry.governor_decision("budget", decision.value, job.job_type)

        if decision == AdmissionDecision.ADMIT:
            return Admission(
                decision, hints={"batch_size": self.settings.budget_full_batch_size}
            )
        if decision == AdmissionDecision.ADMIT_REDUCED:
            return Admission(
                decision,
                hints={"batch_size": self.settings.budget_reduced_batch_size},
            )

        resume_at = next_period_start(now)
        if self.settings.budget_defer_scope == BudgetDeferScope.ALL_PENDING:
            await self.defer_pending(session, resume_at)

        return Admission(
            decision,
            run_after=resume_at,
            reason=f"budget {ledger.name} at {ratio:.0%} of ceiling",
        )

    async def _raise_alert(
        self,
        session: AsyncSession,
        ledger: BudgetLedger,
        decision: AdmissionDecision,
        ratio: float,
    ) -> bool:
        threshold = self.threshold_for(decision)
        result = await session.execute(
            update(BudgetLedger)
            .where(
                and_(
                    BudgetLedger.id == ledger.id,
                    BudgetLedger.alert_level < threshold,
                )
            )
            .values(alert_level=threshold, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await session.commit()

        # Another evaluation already alerted this tier
        if result.rowcount != 1:
            return False

        await self.notifier.notify_budget_alert(
            BudgetAlert(
                ledger=ledger.name,
                level=ALERT_LEVELS[decision],
                threshold=threshold,
                ratio=ratio,
                spent_cents=ledger.spent_cents,
                ceiling_cents=ledger.ceiling_cents,
                period_start=ledger.period_start,
                action=decision.value,
            )
        )
        return True

    async def defer_pending(self, session: AsyncSession, run_after: datetime) -> int:
        """Push every pending governed job to run_after."""
        result = await session.execute(
            update(Job)
            .where(
                and_(
                    Job.job_type.in_(self.settings.budget_job_types),
                    Job.state == JobState.PENDING.value,
                    Job.run_after < run_after,
                )
            )
            .values(run_after=run_after, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await session.commit()

        if result.rowcount:
            logger.warning(
                "Deferred pending budgeted jobs",
                count=result.rowcount,
                run_after=run_after.isoformat(),
            )
        return result.rowcount

    async def record_spend(
        self, session: AsyncSession, cost_cents: int, now: datetime | None = None
    ) -> None:
        """Add metered cost to the current period."""
        if cost_cents < 0:
            raise ValueError("cost_cents must be non-negative")
        if cost_cents == 0:
            return

        ledger = await self.current_ledger(session, now)
        await session.execute(
            update(BudgetLedger)
            .where(BudgetLedger.id == ledger.id)
            .values(
                spent_cents=BudgetLedger.spent_cents + cost_cents,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        logger.info("Recorded metered spend", ledger=ledger.name, cost_cents=cost_cents)

    async def status(
        self, session: AsyncSession, now: datetime | None = None
    ) -> BudgetStatusResponse:
        now = now or utcnow()
        ledger = await self.current_ledger(session, now)
        ratio = ledger.ratio()
        return BudgetStatusResponse(
            name=ledger.name,
            period_start=ledger.period_start,
            next_period_start=next_period_start(now),
            ceiling_cents=ledger.ceiling_cents,
            spent_cents=ledger.spent_cents,
            remaining_cents=ledger.remaining_cents(),
            ratio=ratio,
            alert_level=ledger.alert_level,
            decision=self.decide(ratio).value,
        )
