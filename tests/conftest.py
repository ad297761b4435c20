import os
import random
from collections.abc import AsyncGenerator, Awaitable, Callable, Generator
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from portal_jobs.config.settings import Settings, get_settings
from portal_jobs.infra.database import Base, Database, get_database, utcnow
from portal_jobs.main import create_app
from portal_jobs.v1.core.registries import JobRegistry, job_registry
from portal_jobs.v1.infra.jobs.models import BudgetLedger, Job, JobState, ResourceSlot
from portal_jobs.v1.infra.jobs.schemas import BudgetAlert, EscalationEvent
from portal_jobs.v1.infra.jobs.service import JobService
from portal_jobs.v1.infra.jobs.telemetry import StructlogTelemetryEmitter
from portal_jobs.v1.infra.jobs.worker import JobWorker


def _uses_postgres() -> bool:
    database_url = os.getenv("DATABASE_URL")
    return bool(database_url and "postgresql" in database_url)


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings tuned for fast, deterministic worker tests."""
    if _uses_postgres():
        database_url = os.environ["DATABASE_URL"]
    else:
        database_url = f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}"

    return Settings(
        database_url=database_url,
        environment="test",
        queue_poll_intervals={
            "HIGH": 0.01,
            "DEFAULT": 0.01,
            "SCREENSHOT": 0.01,
            "LOW": 0.01,
            "BULK": 0.01,
        },
        poll_error_backoff_s=0.01,
        poll_error_backoff_max_s=0.05,
        heartbeat_interval_s=0.05,
        reaper_interval_s=0.05,
        liveness_threshold_s=300.0,
        shutdown_grace_s=1.0,
        retry_base_delay_s=1.0,
        retry_max_delay_s=60.0,
        screenshot_acquire_timeout_s=5.0,
        screenshot_defer_s=0.0,
        semaphore_poll_interval_s=0.01,
        handler_defer_s=0.0,
        escalation_webhook_url=None,
    )


@pytest.fixture
async def database(settings: Settings) -> AsyncGenerator[Database, None]:
    """Fresh schema for each test."""
    db = Database(settings)
    if _uses_postgres():
        async with db.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
    await db.create_all()

    yield db

    if _uses_postgres():
        async with db.session() as session:
            for model in (ResourceSlot, BudgetLedger, Job):
                await session.execute(delete(model))
            await session.commit()
    await db.close()


@pytest.fixture
async def db_session(database: Database) -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session for each test."""
    async with database.session() as session:
        yield session


@pytest.fixture
def make_job(database: Database) -> Callable[..., Awaitable[int]]:
    """Insert a job row directly, bypassing routing."""

    async def _make(
        job_type: str = "rss_feed_refresh", queue: str = "DEFAULT", **fields: Any
    ) -> int:
        now = utcnow()
        values = {
            "queue": queue,
            "job_type": job_type,
            "payload": {},
            "priority": 5,
            "state": JobState.PENDING.value,
            "attempt_count": 0,
            "max_attempts": 5,
            "run_after": now,
            "failures": [],
            "created_at": now,
            "updated_at": now,
        }
        values.update(fields)
        async with database.session() as session:
            job = Job(**values)
            session.add(job)
            await session.commit()
            return job.id

    return _make


@pytest.fixture
def load_job(database: Database) -> Callable[[int], Awaitable[Job]]:
    """Read a job through a fresh session."""

    async def _load(job_id: int) -> Job:
        async with database.session() as session:
            return await session.get(Job, job_id)

    return _load


@pytest.fixture
def registry() -> Generator[JobRegistry, None, None]:
    """Global job registry, restored after the test."""
    before = set(job_registry.list())
    yield job_registry
    for job_type in set(job_registry.list()) - before:
        job_registry.unregister(job_type)


class RecordingNotifier:
    """Escalation channel that keeps everything it is handed."""

    def __init__(self):
        self.dead_jobs: list[EscalationEvent] = []
        self.budget_alerts: list[BudgetAlert] = []

    async def notify_dead_job(self, event: EscalationEvent) -> None:
        self.dead_jobs.append(event)

    async def notify_budget_alert(self, alert: BudgetAlert) -> None:
        self.budget_alerts.append(alert)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def telemetry() -> StructlogTelemetryEmitter:
    return StructlogTelemetryEmitter()


@pytest.fixture
def make_worker(
    settings, database, registry, notifier, telemetry
) -> Callable[..., JobWorker]:
    """Factory for workers sharing the test database."""

    def _make(**overrides) -> JobWorker:
        worker_settings = overrides.pop("settings", settings)
        options = {
            "database": database,
            "registry": registry,
            "notifier": notifier,
            "telemetry": telemetry,
            "rng": random.Random(7),
        }
        options.update(overrides)
        return JobWorker(worker_settings, **options)

    return _make


@pytest.fixture
def job_service(settings, registry) -> JobService:
    return JobService(settings, registry)


@pytest.fixture
def app(settings, database):
    """Create a test FastAPI application bound to the test database."""
    app = create_app()

    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_database] = lambda: database

    yield app

    app.dependency_overrides.clear()


@pytest.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
