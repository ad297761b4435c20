"""Tests for CLI commands"""

from unittest.mock import Mock, patch

import httpx
import pytest
from typer.testing import CliRunner

from cli.client.base import APIClient, PortalJobsError
from cli.client.endpoints import PortalJobsClient
from cli.main import app


@pytest.fixture
def runner():
    """CLI test runner"""
    return CliRunner()


def _client_mock():
    client = Mock()
    client.__enter__ = Mock(return_value=client)
    client.__exit__ = Mock(return_value=None)
    return client


class TestMainCommands:
    """Test main CLI commands"""

    def test_version(self, runner):
        result = runner.invoke(app, ["version"])
        assert result.exit_code == 0
        assert "Portal Jobs CLI" in result.stdout

    @patch("cli.main.PortalJobsClient")
    def test_status_success(self, mock_client_class, runner):
        """Test status command with successful connection"""
        client = _client_mock()
        client.health_check.return_value = {
            "version": "1.0.0",
            "environment": "development",
            "worker": {"active_workers": 2, "pending_jobs": 7, "stale_claims": 0},
        }
        mock_client_class.return_value = client

        result = runner.invoke(app, ["status"])
        assert result.exit_code == 0
        assert "Connected Successfully" in result.stdout
        assert "Active workers" in result.stdout

    @patch("cli.main.PortalJobsClient")
    def test_status_failure(self, mock_client_class, runner):
        """Test status command with connection failure"""
        client = _client_mock()
        client.health_check.side_effect = PortalJobsError("Connection failed")
        mock_client_class.return_value = client

        result = runner.invoke(app, ["status"])
        assert result.exit_code == 1
        assert "Connection Failed" in result.stdout


class TestJobCommands:
    """Test job submission and inspection commands"""

    @patch("cli.commands.jobs.PortalJobsClient")
    def test_submit_job(self, mock_client_class, runner):
        client = _client_mock()
        client.submit_job.return_value = {"job_id": 17, "queue": "HIGH", "state": "PENDING"}
        mock_client_class.return_value = client

        result = runner.invoke(
            app, ["jobs", "submit", "stock_refresh", "--payload", '{"symbol": "ACME"}']
        )

        assert result.exit_code == 0
        assert "Submitted job 17 to HIGH" in result.stdout
        client.submit_job.assert_called_once_with(
            "stock_refresh", {"symbol": "ACME"}, max_attempts=None, run_after=None
        )

    def test_submit_job_rejects_bad_payload(self, runner):
        result = runner.invoke(app, ["jobs", "submit", "stock_refresh", "--payload", "{"])
        assert result.exit_code == 1
        assert "not valid JSON" in result.stdout

    @patch("cli.commands.jobs.PortalJobsClient")
    def test_submit_unknown_job_type(self, mock_client_class, runner):
        client = _client_mock()
        client.submit_job.side_effect = PortalJobsError(
            "API Error 422: No handler registered for job type: nope"
        )
        mock_client_class.return_value = client

        result = runner.invoke(app, ["jobs", "submit", "nope"])
        assert result.exit_code == 1
        assert "Failed to submit job" in result.stdout

    @patch("cli.commands.jobs.PortalJobsClient")
    def test_get_job_shows_failures(self, mock_client_class, runner):
        client = _client_mock()
        client.get_job.return_value = {
            "id": 5,
            "job_type": "rss_feed_refresh",
            "queue": "DEFAULT",
            "priority": 2,
            "state": "PENDING",
            "attempt_count": 1,
            "max_attempts": 5,
            "run_after": "2025-01-01T00:05:00Z",
            "payload": {"feed_id": 3},
            "last_error": "timed out",
            "failures": [
                {"attempt": 1, "category": "transient", "error": "timed out", "at": "x"}
            ],
        }
        mock_client_class.return_value = client

        result = runner.invoke(app, ["jobs", "get", "5"])
        assert result.exit_code == 0
        assert "Job 5" in result.stdout
        assert "1 recorded failure(s)" in result.stdout

    @patch("cli.commands.jobs.PortalJobsClient")
    def test_list_jobs_empty(self, mock_client_class, runner):
        client = _client_mock()
        client.list_jobs.return_value = {"jobs": [], "total": 0}
        mock_client_class.return_value = client

        result = runner.invoke(app, ["jobs", "list", "--state", "DEAD"])
        assert result.exit_code == 0
        assert "No jobs found" in result.stdout
        client.list_jobs.assert_called_once_with(
            state="DEAD", queue=None, job_type=None, limit=20, offset=0
        )

    @patch("cli.commands.jobs.PortalJobsClient")
    def test_list_jobs_table(self, mock_client_class, runner):
        client = _client_mock()
        client.list_jobs.return_value = {
            "jobs": [
                {
                    "id": 9,
                    "job_type": "ai_tagging",
                    "queue": "BULK",
                    "state": "RUNNING",
                    "attempt_count": 1,
                    "max_attempts": 5,
                    "run_after": "2025-01-01T00:00:00Z",
                }
            ],
            "total": 1,
        }
        mock_client_class.return_value = client

        result = runner.invoke(app, ["jobs", "list"])
        assert result.exit_code == 0
        assert "Showing 1 of 1 jobs" in result.stdout

    @patch("cli.commands.jobs.PortalJobsClient")
    def test_stats(self, mock_client_class, runner):
        client = _client_mock()
        client.get_stats.return_value = {
            "total_jobs": 12,
            "by_state": {"PENDING": 4, "SUCCEEDED": 8},
            "queue_depth": {"DEFAULT": 4},
            "stale_claims": 1,
            "dead_last_hour": 0,
        }
        mock_client_class.return_value = client

        result = runner.invoke(app, ["jobs", "stats"])
        assert result.exit_code == 0
        assert "Queue Overview" in result.stdout

    @patch("cli.commands.jobs.PortalJobsClient")
    def test_budget(self, mock_client_class, runner):
        client = _client_mock()
        client.get_budget.return_value = {
            "name": "ai_tagging",
            "period_start": "2025-01-01T00:00:00Z",
            "next_period_start": "2025-02-01T00:00:00Z",
            "ceiling_cents": 50000,
            "spent_cents": 47500,
            "remaining_cents": 2500,
            "ratio": 0.95,
            "alert_level": 90,
            "decision": "defer",
        }
        mock_client_class.return_value = client

        result = runner.invoke(app, ["jobs", "budget"])
        assert result.exit_code == 0
        assert "$475.00" in result.stdout
        assert "defer" in result.stdout


class TestWorkerCommands:
    def test_run_rejects_unknown_queue(self, runner):
        result = runner.invoke(app, ["worker", "run", "--queue", "URGENT"])
        assert result.exit_code == 1
        assert "Unknown queue" in result.stdout


class TestAPIClient:
    """Envelope handling against a mocked transport"""

    def _client(self, handler) -> PortalJobsClient:
        return PortalJobsClient(
            base_url="http://jobs.test", transport=httpx.MockTransport(handler)
        )

    def test_unwraps_success_envelope(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/v1/jobs/3"
            return httpx.Response(200, json={"ok": True, "data": {"id": 3}})

        with self._client(handler) as client:
            assert client.get_job(3) == {"id": 3}

    def test_submit_sends_body(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = request.read()
            return httpx.Response(
                200,
                json={"ok": True, "data": {"job_id": 1, "queue": "LOW", "state": "PENDING"}},
            )

        with self._client(handler) as client:
            client.submit_job("link_health_check", {"url": "https://x"}, max_attempts=2)

        assert b'"max_attempts":2' in seen["body"].replace(b" ", b"")

    def test_error_envelope_raises(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                404, json={"ok": False, "error": {"message": "Job not found: 99"}}
            )

        with self._client(handler) as client, pytest.raises(
            PortalJobsError, match="Job not found"
        ):
            client.get_job(99)

    def test_connection_error_raises(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        api = APIClient("http://jobs.test", transport=httpx.MockTransport(handler))
        with api, pytest.raises(PortalJobsError, match="Connection failed"):
            api.get("/healthz")
