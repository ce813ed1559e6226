"""
Unit tests for the FastAPI ASGI application — REST endpoints.

Tests the /trigger/{job_id} endpoint for manual job execution,
as well as the /health, /ready and /info endpoints.

Uses FastAPI's TestClient with stub jobs and mocked scheduler state.
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient
from railway import ErrorCode, Result

from domain_ledger import asgi
from domain_ledger.domain.models import ReconciliationReport, TickReport
from domain_ledger.scheduler import ScheduledJob


@pytest.fixture(autouse=True)
def _reset_asgi_state() -> None:
    """Reset ASGI module-level state before each test."""
    asgi._scheduler_thread = None
    asgi._scheduler_started = False
    asgi._scheduler_ready = False
    asgi._error_message = None
    asgi._jobs.clear()


@pytest.fixture()
def client() -> TestClient:
    """Create a TestClient without running the lifespan (no real startup)."""
    return TestClient(asgi.app, raise_server_exceptions=False)


def _install(job_id: str, fn) -> None:
    asgi._jobs[job_id] = ScheduledJob(id=job_id, name=job_id, cron="* * * * *", fn=fn)


# ─────────────────────── POST /trigger/{job_id} ───────────────────────


class TestTriggerEndpoint:
    """Tests for the POST /trigger/{job_id} endpoint — manual job execution."""

    def test_unknown_job_returns_404(self, client: TestClient) -> None:
        """
        GIVEN only the lifecycle tick is wired
        WHEN POST /trigger/reconciliation is called
        THEN it returns 404 listing the available jobs.
        """
        _install("lifecycle_tick", lambda: Result.success(TickReport()))

        response = client.post("/trigger/reconciliation")

        assert response.status_code == 404
        body = response.json()
        assert body["status"] == "unknown_job"
        assert body["available"] == ["lifecycle_tick"]

    def test_returns_200_with_report_summary(self, client: TestClient) -> None:
        """
        GIVEN a reconciliation job that corrected 2 of 5 facts
        WHEN it is triggered
        THEN it returns 200 with the flattened report.
        """
        _install(
            "reconciliation",
            lambda: Result.success(ReconciliationReport(processed=5, corrected=2, unchanged=3)),
        )

        response = client.post("/trigger/reconciliation")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "success"
        assert body["report"]["corrected"] == 2
        assert body["report"]["unclaimed"] == 0
        assert body["report"]["cancelled"] is False

    def test_registry_outage_returns_503(self, client: TestClient) -> None:
        """
        GIVEN a job failing with a registry outage
        WHEN it is triggered
        THEN it returns 503 with error details.
        """
        _install(
            "reconciliation",
            lambda: Result.failure(ErrorCode.SERVICE_UNAVAILABLE_ERROR, "registry unreachable"),
        )

        response = client.post("/trigger/reconciliation")

        assert response.status_code == 503
        body = response.json()
        assert body["status"] == "failed"
        assert body["error_code"] == "SERVICE_UNAVAILABLE_ERROR"
        assert "registry unreachable" in body["message"]

    def test_store_failure_returns_500(self, client: TestClient) -> None:
        _install(
            "verification",
            lambda: Result.failure(ErrorCode.DATABASE_ERROR, "ledger store failure during verify_all"),
        )

        response = client.post("/trigger/verification")

        assert response.status_code == 500
        assert response.json()["error_code"] == "DATABASE_ERROR"

    def test_returns_500_on_unexpected_exception(self, client: TestClient) -> None:
        """
        GIVEN a job that raises
        WHEN it is triggered
        THEN it returns 500 with the exception message.
        """

        def _exploding_job() -> Result[int]:
            raise RuntimeError("Unexpected kaboom")

        _install("verification", _exploding_job)

        response = client.post("/trigger/verification")

        assert response.status_code == 500
        assert "kaboom" in response.json()["message"]


# ─────────────────────── GET /health ───────────────────────


class TestHealthEndpoint:
    """Tests for the GET /health liveness check."""

    def test_health_returns_503_when_no_scheduler_thread(self, client: TestClient) -> None:
        response = client.get("/health")
        assert response.status_code == 503

    def test_health_returns_503_on_error(self, client: TestClient) -> None:
        """
        GIVEN a startup error occurred
        WHEN GET /health is called
        THEN it returns 503 with the error message.
        """
        asgi._error_message = "Config broken"

        response = client.get("/health")

        assert response.status_code == 503
        assert "Config broken" in response.json()["error"]

    def test_health_returns_200_with_alive_thread(self, client: TestClient) -> None:
        mock_thread = MagicMock()
        mock_thread.is_alive.return_value = True
        asgi._scheduler_thread = mock_thread

        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


# ─────────────────────── GET /ready ───────────────────────


class TestReadyEndpoint:
    """Tests for the GET /ready readiness check."""

    def test_ready_returns_202_when_not_started(self, client: TestClient) -> None:
        response = client.get("/ready")
        assert response.status_code == 202

    def test_ready_returns_200_when_started(self, client: TestClient) -> None:
        """
        GIVEN the scheduler is started and ready
        WHEN GET /ready is called
        THEN it returns 200.
        """
        mock_thread = MagicMock()
        mock_thread.is_alive.return_value = True
        asgi._scheduler_thread = mock_thread
        asgi._scheduler_started = True
        asgi._scheduler_ready = True

        response = client.get("/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "ready"


# ─────────────────────── GET /info ───────────────────────


class TestInfoEndpoint:
    """Tests for the GET /info metadata endpoint."""

    def test_info_lists_wired_jobs(self, client: TestClient) -> None:
        _install("verification", lambda: Result.success(0))
        _install("lifecycle_tick", lambda: Result.success(0))

        response = client.get("/info")

        assert response.status_code == 200
        body = response.json()
        assert body["name"] == "domain-ledger"
        assert body["version"] == "0.1.0"
        assert body["jobs"] == ["lifecycle_tick", "verification"]
        assert body["scheduler_running"] is False
