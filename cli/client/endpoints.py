"""API Endpoint Wrappers - Type-safe API calls"""

from typing import Any

import httpx

from portal_jobs.config.settings import settings

from .base import APIClient, PortalJobsError

__all__ = ["PortalJobsClient", "PortalJobsError"]


class PortalJobsClient:
    """High-level client with typed endpoint methods"""

    def __init__(
        self,
        base_url: str | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.api = APIClient(
            base_url=base_url or settings.api_base_url,
            timeout=settings.api_timeout_s,
            transport=transport,
        )

    def __enter__(self):
        self.api.__enter__()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.api.__exit__(exc_type, exc_val, exc_tb)

    # Health Check
    def health_check(self) -> dict[str, Any]:
        """Check API health status"""
        return self.api.get("/healthz")

    # Jobs Endpoints
    def submit_job(
        self,
        job_type: str,
        payload: dict[str, Any] | None = None,
        max_attempts: int | None = None,
        run_after: str | None = None,
    ) -> dict[str, Any]:
        """Submit a job"""
        body: dict[str, Any] = {"job_type": job_type, "payload": payload or {}}
        if max_attempts is not None:
            body["max_attempts"] = max_attempts
        if run_after:
            body["run_after"] = run_after
        return self.api.post("/jobs", json=body)

    def get_job(self, job_id: int) -> dict[str, Any]:
        """Get specific job by ID"""
        return self.api.get(f"/jobs/{job_id}")

    def list_jobs(
        self,
        state: str | None = None,
        queue: str | None = None,
        job_type: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> dict[str, Any]:
        """List jobs with filters"""
        params: dict[str, Any] = {"limit": limit, "offset": offset}
        if state:
            params["state"] = state
        if queue:
            params["queue"] = queue
        if job_type:
            params["job_type"] = job_type
        return self.api.get("/jobs", params)

    def get_stats(self) -> dict[str, Any]:
        """Get queue statistics"""
        return self.api.get("/jobs/stats/overview")

    def get_budget(self) -> dict[str, Any]:
        """Get current budget period"""
        return self.api.get("/jobs/budget")

    def get_telemetry(self) -> dict[str, Any]:
        """Get API process telemetry counters"""
        return self.api.get("/jobs/telemetry")
