"""
Application entry point — wires dependencies and starts the scheduler.

Composition root: creates concrete adapters, injects them into the
engines, and hands the scheduled jobs to the scheduler.

This is the ONLY place where concrete classes are instantiated.
Everything else depends on Protocol interfaces.

Responsibilities:
  1. Configure structlog for structured logging
  2. Load and validate configuration from environment
  3. Create concrete adapters (PostgreSQL store, Fernet cipher, OpenSRS client)
  4. Build the engines (audit → aggregates → billing → lifecycle →
     reconciliation / registrar)
  5. Create the scheduled jobs and start the scheduler
"""

from __future__ import annotations

import logging
import sys
import threading
from dataclasses import dataclass
from functools import partial

import structlog
from railway import ErrorCode
from railway.result import Result

from domain_ledger import __version__
from domain_ledger.adapters.cipher import FernetAuthCodeCipher
from domain_ledger.adapters.opensrs import OpenSrsRegistryClient
from domain_ledger.adapters.repository import PsycopgLedgerStore
from domain_ledger.aggregates import AggregateMaintainer
from domain_ledger.audit import AuditRecorder
from domain_ledger.billing import BillingService, PriceList
from domain_ledger.config import AppSettings
from domain_ledger.domain.models import ReconciliationReport
from domain_ledger.domain.ports import AuthCodeCipher, LedgerStore, RegistryClient
from domain_ledger.lifecycle import LifecycleEngine
from domain_ledger.pipeline import (
    ReconciliationWindow,
    run_lifecycle_tick,
    run_reconciliation,
    run_verification,
)
from domain_ledger.reconciliation import ReconciliationEngine
from domain_ledger.registrar import Registrar
from domain_ledger.scheduler import ScheduledJob, create_scheduler, register_shutdown_signals
from domain_ledger.transactions import utc_now


def configure_structlog(log_level: str = "INFO") -> None:
    """
    Configure structlog for structured logging.

    Colored, human-readable console output with ISO timestamps; the level
    filter comes from LOG_LEVEL.
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


type _Adapters = tuple[LedgerStore, AuthCodeCipher, RegistryClient | None]


def _create_adapters(settings: AppSettings) -> _Adapters:
    """
    Instantiate all concrete adapters from application settings.

    The registry client is None when no reseller credentials are configured;
    reconciliation and registry-backed actions are then unavailable.
    """
    store = PsycopgLedgerStore(dsn=settings.database.get_dsn())
    if settings.database.apply_schema:
        store.apply_schema()
    cipher = FernetAuthCodeCipher(settings.auth_code_key.get_secret_value())
    registry: RegistryClient | None = None
    if settings.registry.configured:
        registry = OpenSrsRegistryClient(
            username=settings.registry.username,  # type: ignore[arg-type]
            credential=settings.registry.credential.get_secret_value(),  # type: ignore[union-attr]
            environment=settings.registry.environment,
            page_size=settings.registry.page_size,
            timeout=settings.registry.timeout_seconds,
        )
    return store, cipher, registry


@dataclass(frozen=True, slots=True)
class Services:
    """Every wired engine, sharing one store and one audit recorder."""

    store: LedgerStore
    registry: RegistryClient | None
    audit: AuditRecorder
    aggregates: AggregateMaintainer
    billing: BillingService
    lifecycle: LifecycleEngine
    reconciliation: ReconciliationEngine
    registrar: Registrar


def build_services(
    settings: AppSettings,
    store: LedgerStore,
    cipher: AuthCodeCipher,
    registry: RegistryClient | None,
) -> Services:
    """Build the engines over already-created adapters."""
    audit = AuditRecorder()
    aggregates = AggregateMaintainer(audit, policy=settings.billing.currency_policy())
    billing = BillingService(
        store,
        audit,
        aggregates,
        prices=PriceList(settings.billing.prices),
        invoice_due_days=settings.billing.invoice_due_days,
    )
    schemas = settings.attribute_schemas()
    lifecycle = LifecycleEngine(
        store,
        audit,
        aggregates,
        billing,
        windows=settings.lifecycle.window_table(),
        schemas=schemas,
    )
    reconciliation = ReconciliationEngine(store, lifecycle)
    registrar = Registrar(store, audit, lifecycle, cipher, registry=registry, schemas=schemas)
    return Services(
        store=store,
        registry=registry,
        audit=audit,
        aggregates=aggregates,
        billing=billing,
        lifecycle=lifecycle,
        reconciliation=reconciliation,
        registrar=registrar,
    )


def _reconcile_job(
    services: Services, window_days: int, cancel: threading.Event
) -> Result[ReconciliationReport]:
    if services.registry is None:
        return Result.failure(ErrorCode.CONFIGURATION_ERROR, "no registry client is configured")
    window = ReconciliationWindow.around(utc_now(), window_days)
    return run_reconciliation(services.registry, services.reconciliation, window, cancel)


def build_jobs(
    settings: AppSettings, services: Services, cancel: threading.Event | None = None
) -> list[ScheduledJob]:
    """The three scheduled jobs; reconciliation only when a registry is configured."""
    jobs = [
        ScheduledJob(
            id="lifecycle_tick",
            name="LifecycleTick",
            cron=settings.scheduler.tick_cron,
            fn=partial(run_lifecycle_tick, services.lifecycle),
        ),
        ScheduledJob(
            id="verification",
            name="AggregateVerification",
            cron=settings.scheduler.verify_cron,
            fn=partial(run_verification, services.aggregates, services.store),
        ),
    ]
    if services.registry is not None:
        jobs.insert(
            1,
            ScheduledJob(
                id="reconciliation",
                name="RegistryReconciliation",
                cron=settings.scheduler.reconcile_cron,
                fn=partial(
                    _reconcile_job,
                    services,
                    settings.reconcile_window_days,
                    cancel or threading.Event(),
                ),
            ),
        )
    return jobs


def main() -> None:
    """Wire dependencies and launch the scheduled jobs."""
    try:
        settings = AppSettings()
    except Exception as e:
        print(f"FATAL: Configuration error — {e}", file=sys.stderr)  # noqa: T201
        sys.exit(1)

    configure_structlog(settings.log_level)
    log = structlog.get_logger()

    log.info(
        "app.starting",
        version=__version__,
        log_level=settings.log_level,
        tick_cron=settings.scheduler.tick_cron,
        reconcile_cron=settings.scheduler.reconcile_cron,
        verify_cron=settings.scheduler.verify_cron,
        registry_environment=settings.registry.environment.value,
        run_on_startup=settings.run_on_startup,
    )

    services = build_services(settings, *_create_adapters(settings))
    cancel = threading.Event()
    scheduler = create_scheduler(
        build_jobs(settings, services, cancel),
        run_on_startup=settings.run_on_startup,
    )
    register_shutdown_signals(scheduler, cancel)

    log.info("app.scheduler_starting", jobs=[job.id for job in scheduler.get_jobs()])

    try:
        scheduler.start()
    except KeyboardInterrupt:
        cancel.set()
        log.info("app.shutdown", reason="signal received")
    except SystemExit:
        cancel.set()
        log.info("app.shutdown", reason="signal received")
        raise
    except Exception as e:
        log.error("app.fatal_error", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
