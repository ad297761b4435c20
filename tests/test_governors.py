import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from portal_jobs.config.settings import BudgetDeferScope
from portal_jobs.infra.database import utcnow
from portal_jobs.v1.infra.jobs.governors import (
    AdmissionDecision,
    BudgetThrottle,
    ConcurrencySemaphore,
    next_period_start,
    period_start,
)
from portal_jobs.v1.infra.jobs.models import Job, JobState


def test_period_boundaries():
    now = datetime(2025, 3, 17, 15, 30, tzinfo=UTC)

    assert period_start(now) == datetime(2025, 3, 1, tzinfo=UTC)
    assert next_period_start(now) == datetime(2025, 4, 1, tzinfo=UTC)


def test_next_period_rolls_over_year():
    assert next_period_start(datetime(2025, 12, 31, 23, 59, tzinfo=UTC)) == datetime(
        2026, 1, 1, tzinfo=UTC
    )


def test_decide_tiers(settings):
    throttle = BudgetThrottle(settings)

    assert throttle.decide(0.10) == AdmissionDecision.ADMIT
    assert throttle.decide(0.75) == AdmissionDecision.ADMIT_REDUCED
    assert throttle.decide(0.89) == AdmissionDecision.ADMIT_REDUCED
    assert throttle.decide(0.90) == AdmissionDecision.DEFER
    assert throttle.decide(0.95) == AdmissionDecision.DEFER
    assert throttle.decide(1.00) == AdmissionDecision.REJECT
    assert throttle.decide(float("inf")) == AdmissionDecision.REJECT


def test_governs_only_budgeted_types(settings):
    throttle = BudgetThrottle(settings)

    assert throttle.governs("ai_tagging")
    assert not throttle.governs("rss_feed_refresh")


# Concurrency semaphore


@pytest.fixture
async def semaphore(settings, database, telemetry):
    semaphore = ConcurrencySemaphore(settings, telemetry=telemetry)
    async with database.session() as session:
        await semaphore.ensure_slots(session)
    return semaphore


@pytest.mark.asyncio
async def test_semaphore_caps_permits(database, semaphore):
    async with database.session() as session:
        assert await semaphore.try_acquire(session, 1)
        assert await semaphore.try_acquire(session, 2)
        assert await semaphore.try_acquire(session, 3)
        assert not await semaphore.try_acquire(session, 4)
        assert await semaphore.in_use(session) == 3

        # Re-acquiring an already held permit does not take a second slot
        assert await semaphore.try_acquire(session, 2)
        assert await semaphore.in_use(session) == 3

        assert await semaphore.release(session, 2) == 1
        assert await semaphore.try_acquire(session, 4)


@pytest.mark.asyncio
async def test_semaphore_concurrent_acquirers(database, semaphore):
    async def attempt(job_id: int) -> bool:
        async with database.session() as session:
            return await semaphore.try_acquire(session, job_id)

    results = await asyncio.gather(*(attempt(job_id) for job_id in range(1, 11)))

    assert results.count(True) == 3
    async with database.session() as session:
        assert await semaphore.in_use(session) == 3


@pytest.mark.asyncio
async def test_semaphore_acquire_times_out(database, semaphore, telemetry):
    async with database.session() as session:
        for job_id in (1, 2, 3):
            await semaphore.try_acquire(session, job_id)

        assert not await semaphore.acquire(session, 4, "screenshot_capture", timeout_s=0.05)

    assert telemetry.decisions[("semaphore", "defer")] == 1


@pytest.mark.asyncio
async def test_semaphore_acquire_waits_for_release(database, semaphore, telemetry):
    async with database.session() as session:
        for job_id in (1, 2, 3):
            await semaphore.try_acquire(session, job_id)

    async def release_later():
        await asyncio.sleep(0.05)
        async with database.session() as session:
            await semaphore.release(session, 1)

    releaser = asyncio.create_task(release_later())
    async with database.session() as session:
        acquired = await semaphore.acquire(
            session, 4, "screenshot_capture", timeout_s=2.0
        )
    await releaser

    assert acquired
    assert telemetry.decisions[("semaphore", "admit")] == 1


@pytest.mark.asyncio
async def test_semaphore_reaps_orphaned_permits(database, semaphore, make_job):
    live = await make_job(
        job_type="screenshot_capture",
        queue="SCREENSHOT",
        state=JobState.RUNNING.value,
        locked_by="worker-1",
        locked_at=utcnow(),
    )
    finished = await make_job(
        job_type="screenshot_capture",
        queue="SCREENSHOT",
        state=JobState.SUCCEEDED.value,
    )

    async with database.session() as session:
        await semaphore.try_acquire(session, live)
        await semaphore.try_acquire(session, finished)

        assert await semaphore.reap_orphans(session) == 1
        assert await semaphore.in_use(session) == 1


@pytest.mark.asyncio
async def test_ensure_slots_is_idempotent(database, semaphore):
    async with database.session() as session:
        await semaphore.ensure_slots(session)
        for job_id in range(1, 5):
            await semaphore.try_acquire(session, job_id)
        assert await semaphore.in_use(session) == 3


# Budget throttle


async def _spend(database, throttle, cents):
    async with database.session() as session:
        await throttle.record_spend(session, cents)


async def _evaluate(database, throttle, job_id, now=None):
    async with database.session() as session:
        job = await session.get(Job, job_id)
        return await throttle.evaluate(session, job, now=now)


@pytest.mark.asyncio
async def test_budget_admits_full_batch(database, settings, make_job):
    throttle = BudgetThrottle(settings)
    job_id = await make_job(job_type="ai_tagging", queue="BULK")

    admission = await _evaluate(database, throttle, job_id)

    assert admission.decision == AdmissionDecision.ADMIT
    assert admission.admitted
    assert admission.hints == {"batch_size": settings.budget_full_batch_size}


@pytest.mark.asyncio
async def test_budget_reduces_batch_and_warns_once(
    database, settings, notifier, make_job
):
    throttle = BudgetThrottle(settings, notifier)
    job_id = await make_job(job_type="ai_tagging", queue="BULK")
    await _spend(database, throttle, int(settings.budget_ceiling_cents * 0.80))

    first = await _evaluate(database, throttle, job_id)
    second = await _evaluate(database, throttle, job_id)

    assert first.decision == AdmissionDecision.ADMIT_REDUCED
    assert first.admitted
    assert first.hints == {"batch_size": settings.budget_reduced_batch_size}
    assert second.decision == AdmissionDecision.ADMIT_REDUCED
    assert [alert.level for alert in notifier.budget_alerts] == ["WARNING"]


@pytest.mark.asyncio
async def test_budget_defers_to_next_period_with_single_alert(
    database, settings, notifier, make_job, load_job
):
    """At 95% of ceiling the job is pushed to the next period and CRITICAL fires once."""
    throttle = BudgetThrottle(settings, notifier)
    job_id = await make_job(job_type="ai_tagging", queue="BULK")
    await _spend(database, throttle, int(settings.budget_ceiling_cents * 0.95))

    decisions = [await _evaluate(database, throttle, job_id) for _ in range(5)]

    assert {d.decision for d in decisions} == {AdmissionDecision.DEFER}
    assert not decisions[0].admitted
    assert decisions[0].run_after == next_period_start(utcnow())
    assert "95%" in decisions[0].reason

    assert len(notifier.budget_alerts) == 1
    alert = notifier.budget_alerts[0]
    assert alert.level == "CRITICAL"
    assert alert.threshold == 90
    assert alert.action == "defer"

    # Claimed scope leaves other pending jobs alone
    assert (await load_job(job_id)).state == JobState.PENDING.value


@pytest.mark.asyncio
async def test_budget_escalates_through_tiers(database, settings, notifier, make_job):
    throttle = BudgetThrottle(settings, notifier)
    job_id = await make_job(job_type="ai_tagging", queue="BULK")
    ceiling = settings.budget_ceiling_cents

    await _spend(database, throttle, int(ceiling * 0.80))
    await _evaluate(database, throttle, job_id)
    await _spend(database, throttle, int(ceiling * 0.12))
    await _evaluate(database, throttle, job_id)
    await _spend(database, throttle, int(ceiling * 0.10))
    rejected = await _evaluate(database, throttle, job_id)

    assert rejected.decision == AdmissionDecision.REJECT
    assert rejected.run_after is not None
    assert [a.level for a in notifier.budget_alerts] == [
        "WARNING",
        "CRITICAL",
        "EMERGENCY",
    ]


@pytest.mark.asyncio
async def test_deferring_does_not_lower_alert_level(database, settings, notifier, make_job):
    throttle = BudgetThrottle(settings, notifier)
    job_id = await make_job(job_type="ai_tagging", queue="BULK")

    await _spend(database, throttle, settings.budget_ceiling_cents)
    await _evaluate(database, throttle, job_id)
    async with database.session() as session:
        ledger = await throttle.current_ledger(session)
        ledger.spent_cents = int(settings.budget_ceiling_cents * 0.95)
        await session.commit()
    await _evaluate(database, throttle, job_id)

    assert [a.level for a in notifier.budget_alerts] == ["EMERGENCY"]


@pytest.mark.asyncio
async def test_all_pending_scope_defers_every_governed_job(
    database, settings, make_job, load_job
):
    settings = settings.model_copy(
        update={"budget_defer_scope": BudgetDeferScope.ALL_PENDING}
    )
    throttle = BudgetThrottle(settings)
    current = await make_job(job_type="ai_tagging", queue="BULK")
    waiting = await make_job(job_type="ai_tagging", queue="BULK")
    unrelated = await make_job(job_type="rss_feed_refresh")
    await _spend(database, throttle, settings.budget_ceiling_cents)

    admission = await _evaluate(database, throttle, current)

    resume_at = next_period_start(utcnow())
    assert admission.decision == AdmissionDecision.REJECT
    assert (await load_job(waiting)).run_after == resume_at
    assert (await load_job(unrelated)).run_after < resume_at


@pytest.mark.asyncio
async def test_new_period_starts_fresh(database, settings, make_job):
    throttle = BudgetThrottle(settings)
    job_id = await make_job(job_type="ai_tagging", queue="BULK")
    await _spend(database, throttle, settings.budget_ceiling_cents)

    next_month = next_period_start(utcnow()) + timedelta(days=1)
    admission = await _evaluate(database, throttle, job_id, now=next_month)

    assert admission.decision == AdmissionDecision.ADMIT


@pytest.mark.asyncio
async def test_record_spend_accumulates(database, settings):
    throttle = BudgetThrottle(settings)

    await _spend(database, throttle, 1200)
    await _spend(database, throttle, 300)
    await _spend(database, throttle, 0)

    async with database.session() as session:
        status = await throttle.status(session)

    assert status.spent_cents == 1500
    assert status.remaining_cents == settings.budget_ceiling_cents - 1500
    assert status.decision == "admit"


@pytest.mark.asyncio
async def test_record_spend_rejects_negative(database, settings):
    throttle = BudgetThrottle(settings)

    async with database.session() as session:
        with pytest.raises(ValueError, match="non-negative"):
            await throttle.record_spend(session, -5)


@pytest.mark.asyncio
async def test_concurrent_spend_is_not_lost(database, settings):
    throttle = BudgetThrottle(settings)
    async with database.session() as session:
        await throttle.current_ledger(session)

    await asyncio.gather(*(_spend(database, throttle, 100) for _ in range(10)))

    async with database.session() as session:
        assert (await throttle.current_ledger(session)).spent_cents == 1000
