from datetime import datetime, timedelta

import pytest

from portal_jobs.infra.database import utcnow
from portal_jobs.v1.core.exceptions import InvalidJobType, JobNotFoundError
from portal_jobs.v1.infra.jobs.models import JobState
from portal_jobs.v1.infra.jobs.schemas import JobCreate


def _handler(payload, context):
    return None


@pytest.mark.asyncio
async def test_submit_creates_pending_job(db_session, job_service, registry):
    registry.register_handler("link_health_check", _handler)

    job_id = await job_service.submit(
        db_session, "link_health_check", {"url": "https://example.com"}
    )

    job = await job_service.get_job_by_id(db_session, job_id)
    assert job.state == JobState.PENDING.value
    assert job.queue == "LOW"
    assert job.attempt_count == 0
    assert job.max_attempts == 5
    assert job.payload == {"url": "https://example.com"}
    assert job.run_after <= utcnow()


@pytest.mark.asyncio
async def test_submit_unknown_type_raises(db_session, job_service):
    with pytest.raises(InvalidJobType) as exc_info:
        await job_service.submit(db_session, "unheard_of")

    assert exc_info.value.job_type == "unheard_of"
    assert exc_info.value.status_code == 422

    _, total = await job_service.list_jobs(db_session)
    assert total == 0


@pytest.mark.asyncio
async def test_submit_uses_queue_hint_for_uncatalogued_type(
    db_session, job_service, registry
):
    registry.register_handler("nightly_digest", _handler, queue_hint="BULK")

    job_id = await job_service.submit(db_session, "nightly_digest")

    job = await job_service.get_job_by_id(db_session, job_id)
    assert job.queue == "BULK"


@pytest.mark.asyncio
async def test_screenshot_jobs_default_to_three_attempts(
    db_session, job_service, registry
):
    registry.register_handler("screenshot_capture", _handler)

    job_id = await job_service.submit(db_session, "screenshot_capture")

    job = await job_service.get_job_by_id(db_session, job_id)
    assert job.queue == "SCREENSHOT"
    assert job.max_attempts == 3


@pytest.mark.asyncio
async def test_submit_rejects_zero_attempts(db_session, job_service, registry):
    registry.register_handler("rss_feed_refresh", _handler)

    with pytest.raises(ValueError, match="max_attempts"):
        await job_service.submit(db_session, "rss_feed_refresh", max_attempts=0)


@pytest.mark.asyncio
async def test_naive_run_after_is_utc(db_session, job_service, registry):
    registry.register_handler("rss_feed_refresh", _handler)
    naive = datetime(2030, 1, 1, 12, 0)

    job_id = await job_service.submit(db_session, "rss_feed_refresh", run_after=naive)

    job = await job_service.get_job_by_id(db_session, job_id)
    assert job.run_after.isoformat() == "2030-01-01T12:00:00+00:00"


@pytest.mark.asyncio
async def test_enqueue_job_response(db_session, job_service, registry):
    registry.register_handler("stock_refresh", _handler)

    result = await job_service.enqueue_job(
        db_session, JobCreate(job_type="stock_refresh", max_attempts=9)
    )

    assert result.queue == "HIGH"
    assert result.state == "PENDING"
    job = await job_service.get_job_by_id(db_session, result.job_id)
    assert job.max_attempts == 9


@pytest.mark.asyncio
async def test_get_missing_job(db_session, job_service):
    with pytest.raises(JobNotFoundError):
        await job_service.get_job_by_id(db_session, 12345)


@pytest.mark.asyncio
async def test_job_stats_counts(db_session, job_service, make_job):
    now = utcnow()
    await make_job()
    await make_job(state=JobState.SUCCEEDED.value)
    await make_job(
        state=JobState.DEAD.value, completed_at=now - timedelta(hours=3)
    )

    stats = await job_service.get_job_stats(db_session)

    assert stats.total_jobs == 3
    assert stats.by_state == {"PENDING": 1, "SUCCEEDED": 1, "DEAD": 1}
    assert stats.by_type == {"rss_feed_refresh": 3}
    assert stats.queue_depth["DEFAULT"] == 1
    assert stats.dead_last_hour == 0
