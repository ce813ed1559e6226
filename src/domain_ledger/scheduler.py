"""
Scheduler — periodic execution of the ledger's background jobs.

Infrastructure layer — uses APScheduler (3.x) for lightweight in-process
scheduling driven by standard 5-field cron expressions:

  lifecycle_tick   time-driven domain transitions + overdue invoices
  reconciliation   registry fetch → per-fact reconciliation
  verification     full recompute of every cached aggregate

Each job runs within a LoggingExecutionContext for structured
observability (timing, success/failure logging). Jobs never overlap with
themselves (max_instances=1).

Graceful shutdown: handles SIGINT/SIGTERM to stop the scheduler cleanly.
"""

from __future__ import annotations

import signal
import sys
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass, fields, is_dataclass
from typing import Any

import structlog
from apscheduler.schedulers.base import BaseScheduler
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from railway import LoggingExecutionContext
from railway.result import Result

log = structlog.get_logger()


@dataclass(frozen=True, slots=True)
class ScheduledJob:
    """A zero-argument job returning a Result, and when to run it."""

    id: str
    name: str
    cron: str
    fn: Callable[[], Result[Any]]


def report_summary(report: Any) -> Any:
    """Flatten a job report for logs and JSON: lists become their lengths."""
    if not is_dataclass(report):
        return report
    summary = {}
    for f in fields(report):
        value = getattr(report, f.name)
        summary[f.name] = len(value) if isinstance(value, list) else value
    return summary


def cron_trigger(cron: str) -> CronTrigger:
    minute, hour, dom, month, dow = cron.split()
    return CronTrigger(minute=minute, hour=hour, day=dom, month=month, day_of_week=dow)


def run_job(job: ScheduledJob) -> Result[Any]:
    """Execute one job within a logging context and log the outcome."""
    ctx = LoggingExecutionContext(operation=job.name)
    result = ctx.execute(job.fn)
    if result.is_success():
        log.info("scheduler.job_completed", job=job.id, report=report_summary(result.value()))
    else:
        log.error("scheduler.job_failed", job=job.id, failure=str(result.error()))
    return result


def create_scheduler(
    jobs: Sequence[ScheduledJob],
    run_on_startup: bool = False,
    scheduler: BaseScheduler | None = None,
) -> BaseScheduler:
    """
    Create a configured APScheduler that runs every job on its cron schedule.

    Args:
        jobs: The wired jobs.
        run_on_startup: If True, execute each job once immediately, in order.
        scheduler: Scheduler to configure; a BlockingScheduler by default.

    Returns:
        The configured scheduler (call .start() to begin).
    """
    scheduler = scheduler or BlockingScheduler()

    for job in jobs:
        scheduler.add_job(
            run_job,
            args=[job],
            trigger=cron_trigger(job.cron),
            id=job.id,
            name=job.name,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )

    if run_on_startup:
        log.info("scheduler.startup_run", jobs=[job.id for job in jobs])
        for job in jobs:
            run_job(job)

    return scheduler


def register_shutdown_signals(scheduler: BaseScheduler, cancel: threading.Event | None = None) -> None:
    """
    Register SIGINT and SIGTERM handlers for graceful shutdown.

    `cancel` is set first so a running reconciliation batch stops between
    facts instead of running to the end.
    """

    def _shutdown(signum: int, frame: object) -> None:
        sig_name = signal.Signals(signum).name
        log.info("scheduler.shutdown_requested", signal=sig_name)
        if cancel is not None:
            cancel.set()
        scheduler.shutdown(wait=False)
        sys.exit(0)

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)
