"""
Job scheduler

One process per deployment runs this. Jobs of different names run in
parallel on a thread pool; a job never overlaps itself (``max_instances=1``
here, and the execution ledger guard across processes).

    python -m clubbilling.worker.scheduler
"""

import logging
from datetime import timedelta

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from clubbilling.core.config import settings
from clubbilling.core.db import engine
from clubbilling.enums import WorkerName
from clubbilling.services.execution_ledger import ExecutionLedger
from clubbilling.worker.tasks import scheduled_job

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def build_scheduler() -> BlockingScheduler:
    tz = settings.SCHEDULER_TIMEZONE
    scheduler = BlockingScheduler(
        timezone=tz,
        executors={"default": ThreadPoolExecutor(settings.WORKER_POOL_SIZE)},
        job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": 3600},
    )
    scheduler.add_job(
        scheduled_job,
        CronTrigger(hour=settings.BILLING_SWEEP_HOUR, minute=0, timezone=tz),
        args=[WorkerName.billing_sweep],
        id=WorkerName.billing_sweep.value,
        replace_existing=True,
    )
    scheduler.add_job(
        scheduled_job,
        IntervalTrigger(minutes=settings.MANDATE_SYNC_INTERVAL_MINUTES, timezone=tz),
        args=[WorkerName.mandate_sync],
        id=WorkerName.mandate_sync.value,
        replace_existing=True,
    )
    scheduler.add_job(
        scheduled_job,
        CronTrigger(hour=settings.DUNNING_SWEEP_HOURS, minute=30, timezone=tz),
        args=[WorkerName.dunning_sweep],
        id=WorkerName.dunning_sweep.value,
        replace_existing=True,
    )
    scheduler.add_job(
        scheduled_job,
        CronTrigger(hour=settings.SEASONAL_INVOICE_HOUR, minute=0, timezone=tz),
        args=[WorkerName.seasonal_invoices],
        id=WorkerName.seasonal_invoices.value,
        replace_existing=True,
    )
    return scheduler


def main() -> None:
    recovered = ExecutionLedger(engine).recover_stale(
        timedelta(minutes=settings.WORKER_STALE_AFTER_MINUTES)
    )
    if recovered:
        logger.warning("Marked %d abandoned worker runs as failed", recovered)
    scheduler = build_scheduler()
    logger.info(
        "Scheduler started: billing sweep %02d:00, mandate sync every %d min, "
        "dunning sweep at hours %s, seasonal invoices %02d:00 (%s).",
        settings.BILLING_SWEEP_HOUR,
        settings.MANDATE_SYNC_INTERVAL_MINUTES,
        settings.DUNNING_SWEEP_HOURS,
        settings.SEASONAL_INVOICE_HOUR,
        settings.SCHEDULER_TIMEZONE,
    )
    scheduler.start()


if __name__ == "__main__":
    main()
