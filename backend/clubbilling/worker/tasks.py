"""
Background job bodies

Every named worker is the same shape: open a session, build the services,
run one sweep and return its ``WorkerResult``. ``run_worker`` wraps the
body in the execution ledger; the scheduler and the manual trigger endpoint
both go through the ledger, so they share the one-running-row guard.
"""

import logging
from collections.abc import Callable

from sqlalchemy.engine import Engine
from sqlmodel import Session

from clubbilling.api.errors import AlreadyRunning
from clubbilling.core import db
from clubbilling.enums import TriggerSource, WorkerName
from clubbilling.integrations.gocardless import PaymentProvider
from clubbilling.models import WorkerExecution
from clubbilling.services.container import BillingServices, build_services
from clubbilling.services.execution_ledger import ExecutionLedger
from clubbilling.services.worker_result import WorkerResult

logger = logging.getLogger(__name__)


def _billing_sweep(services: BillingServices) -> WorkerResult:
    return services.billing.run_sweep()


def _mandate_sync(services: BillingServices) -> WorkerResult:
    return services.mandates.run()


def _dunning_sweep(services: BillingServices) -> WorkerResult:
    return services.dunning.run_retry_sweep(services.billing)


def _seasonal_invoices(services: BillingServices) -> WorkerResult:
    return services.invoices.run()


WORKERS: dict[WorkerName, Callable[[BillingServices], WorkerResult]] = {
    WorkerName.billing_sweep: _billing_sweep,
    WorkerName.mandate_sync: _mandate_sync,
    WorkerName.dunning_sweep: _dunning_sweep,
    WorkerName.seasonal_invoices: _seasonal_invoices,
}


def make_body(
    worker_name: WorkerName,
    engine: Engine,
    *,
    provider: PaymentProvider | None = None,
) -> Callable[[], WorkerResult]:
    job = WORKERS[WorkerName(worker_name)]

    def body() -> WorkerResult:
        with Session(engine) as session:
            return job(build_services(session, provider=provider))

    return body


def run_worker(
    worker_name: WorkerName,
    *,
    engine: Engine | None = None,
    trigger: TriggerSource = TriggerSource.scheduled,
    triggered_by: int | None = None,
    provider: PaymentProvider | None = None,
) -> WorkerExecution:
    """
    Run one worker to completion inside the ledger.

    Raises:
        AlreadyRunning: another run of the same worker is still open
    """
    engine = engine or db.engine
    ledger = ExecutionLedger(engine)
    return ledger.run(
        worker_name,
        make_body(worker_name, engine, provider=provider),
        trigger=trigger,
        triggered_by=triggered_by,
    )


def scheduled_job(worker_name: WorkerName) -> None:
    """Scheduler entry point; never raises so the scheduler keeps ticking."""
    try:
        execution = run_worker(worker_name)
    except AlreadyRunning:
        logger.info("%s is already running, skip this tick.", worker_name.value)
        return
    except Exception:
        logger.exception("%s could not be recorded in the execution ledger", worker_name.value)
        return
    logger.info(
        "%s finished with status %s (%d processed, %d failed)",
        worker_name.value,
        execution.status,
        execution.items_processed,
        execution.items_failed,
    )
