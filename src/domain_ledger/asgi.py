"""
FastAPI + Uvicorn ASGI application for Kubernetes deployment.

Runs domain-ledger as a web service with health check endpoints and the
background scheduler. Uvicorn serves this app with graceful shutdown
(SIGTERM → cancel reconciliation between facts → drain + exit).

Architecture:
  - FastAPI: lightweight web framework
  - Uvicorn: production ASGI server (handles signals, graceful shutdown)
  - APScheduler: runs in a background thread while Uvicorn listens for /health
  - K8s checks: liveness (scheduler thread alive) + readiness (scheduler started)

Entry point for production: uvicorn domain_ledger.asgi:app --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from railway import ErrorCode

from domain_ledger import __version__
from domain_ledger.config import AppSettings
from domain_ledger.main import _create_adapters, build_jobs, build_services, configure_structlog
from domain_ledger.scheduler import ScheduledJob, create_scheduler, report_summary, run_job

# ─────────────────────── Global State ───────────────────────
# These are set during app startup and used for health checks.

_scheduler_thread: threading.Thread | None = None
_scheduler_started = False
_scheduler_ready = False
_error_message: str | None = None
_jobs: dict[str, ScheduledJob] = {}
_cancel = threading.Event()
log = structlog.get_logger()

# Failure code → status of a manually triggered run; anything else is 500.
_TRIGGER_STATUS = {
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.AUTHORIZATION_ERROR: 403,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.BUSINESS_RULE_ERROR: 409,
    ErrorCode.EXTERNAL_SERVICE_ERROR: 502,
    ErrorCode.SERVICE_UNAVAILABLE_ERROR: 503,
}


def _scheduler_alive() -> bool:
    return _scheduler_thread is not None and _scheduler_thread.is_alive()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    FastAPI lifespan context manager — runs on startup and shutdown.

    Startup: Create adapters, engines and jobs; start scheduler in background thread.
    Shutdown: Cancel running reconciliation, stop scheduler and thread.
    """
    global _scheduler_thread, _scheduler_ready, _error_message

    log.info("asgi.startup", phase="lifespan_startup")

    try:
        settings = AppSettings()
    except Exception as e:
        error_msg = f"Configuration error: {e}"
        _error_message = error_msg
        log.error("asgi.startup_error", error=error_msg)
        raise

    configure_structlog(settings.log_level)

    log.info(
        "asgi.startup_config",
        version=__version__,
        log_level=settings.log_level,
        tick_cron=settings.scheduler.tick_cron,
        reconcile_cron=settings.scheduler.reconcile_cron,
        verify_cron=settings.scheduler.verify_cron,
        run_on_startup=settings.run_on_startup,
    )

    try:
        services = build_services(settings, *_create_adapters(settings))
        jobs = build_jobs(settings, services, _cancel)
        _jobs.clear()
        _jobs.update({job.id: job for job in jobs})
        scheduler = create_scheduler(jobs, run_on_startup=settings.run_on_startup)
    except Exception as e:
        error_msg = f"Failed to initialize adapters/scheduler: {e}"
        _error_message = error_msg
        log.error("asgi.init_error", error=error_msg)
        raise

    def run_scheduler() -> None:
        """Run scheduler in background thread (blocking)."""
        global _scheduler_started, _error_message
        try:
            _scheduler_started = True
            log.info("asgi.scheduler_thread_started")
            scheduler.start()
        except KeyboardInterrupt:
            log.info("asgi.scheduler_interrupted")
        except Exception as e:
            error_msg = f"Scheduler error: {e}"
            _error_message = error_msg
            log.error("asgi.scheduler_error", error=error_msg)

    _scheduler_thread = threading.Thread(target=run_scheduler, daemon=True)
    _scheduler_thread.start()

    await asyncio.sleep(0.1)
    _scheduler_ready = True

    log.info("asgi.startup_complete", jobs=sorted(_jobs))

    yield

    # ──── Shutdown ────
    log.info("asgi.shutdown", reason="SIGTERM or server stop")
    _cancel.set()

    try:
        scheduler.shutdown(wait=True)
        log.info("asgi.scheduler_shutdown_complete")
    except Exception as e:
        log.warning("asgi.scheduler_shutdown_error", error=str(e))

    if _scheduler_thread and _scheduler_thread.is_alive():
        _scheduler_thread.join(timeout=5.0)
        if _scheduler_thread.is_alive():
            log.warning("asgi.scheduler_thread_timeout", timeout_seconds=5.0)

    log.info("asgi.shutdown_complete")


# ─────────────────────── FastAPI Application ───────────────────────

app = FastAPI(
    title="domain-ledger",
    description="Domain registration ledger — lifecycle, billing aggregates and registry reconciliation",
    version=__version__,
    lifespan=lifespan,
)


@app.get("/health")
async def health() -> JSONResponse:
    """
    Kubernetes liveness check.

    Returns 200 while the scheduler thread is alive and startup succeeded,
    503 otherwise.
    """
    if _error_message:
        log.warning("health.check_failed", error=_error_message)
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "error": _error_message},
        )

    if not _scheduler_alive():
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "reason": "scheduler thread not running"},
        )

    return JSONResponse(
        status_code=200,
        content={"status": "healthy", "scheduler_running": True},
    )


@app.get("/ready")
async def ready() -> JSONResponse:
    """Kubernetes readiness check — 200 once the scheduler is running."""
    if not _scheduler_ready or not _scheduler_started:
        return JSONResponse(
            status_code=202,
            content={"status": "starting", "scheduler_started": _scheduler_started},
        )

    if _error_message:
        return JSONResponse(
            status_code=503,
            content={"status": "error", "error": _error_message},
        )

    return JSONResponse(
        status_code=200,
        content={
            "status": "ready",
            "scheduler_running": _scheduler_alive(),
        },
    )


@app.get("/info")
async def info() -> dict[str, Any]:
    return {
        "name": "domain-ledger",
        "version": __version__,
        "jobs": sorted(_jobs),
        "scheduler_running": _scheduler_alive(),
        "scheduler_started": _scheduler_started,
        "scheduler_ready": _scheduler_ready,
        "has_error": _error_message is not None,
    }


@app.post("/trigger/{job_id}")
async def trigger(job_id: str) -> JSONResponse:
    """
    Manually run one scheduled job (lifecycle_tick, reconciliation, verification).

    Runs the job in a worker thread to avoid blocking the event loop.

    Returns 200 with the job report on success and 404 for an unknown job.
    A failed run answers with the status of its error code (503 for a
    registry outage, 500 for store or unexpected failures).
    """
    job = _jobs.get(job_id)
    if job is None:
        return JSONResponse(
            status_code=404,
            content={"status": "unknown_job", "job": job_id, "available": sorted(_jobs)},
        )

    log.info("trigger.manual_start", source="REST", job=job_id)

    try:
        result = await asyncio.to_thread(run_job, job)
    except Exception as e:
        log.error("trigger.exception", job=job_id, error=str(e))
        return JSONResponse(
            status_code=500,
            content={"status": "error", "error": str(e)},
        )

    if result.is_success():
        log.info("trigger.completed", job=job_id)
        return JSONResponse(
            status_code=200,
            content={"status": "success", "job": job_id, "report": report_summary(result.value())},
        )

    failure = result.error()
    log.error("trigger.job_failed", job=job_id, failure=str(failure))
    return JSONResponse(
        status_code=_TRIGGER_STATUS.get(failure.code, 500),
        content={
            "status": "failed",
            "job": job_id,
            "error_code": failure.code.value,
            "message": failure.message,
        },
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "domain_ledger.asgi:app",
        host="0.0.0.0",
        port=8000,
        reload=False,
        log_level="info",
    )
