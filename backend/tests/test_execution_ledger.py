from __future__ import annotations

from datetime import timedelta

import pytest
from sqlmodel import Session

from clubbilling.api.errors import AlreadyRunning
from clubbilling.enums import TriggerSource, WorkerName, WorkerStatus
from clubbilling.models import WorkerExecution, utc_now
from clubbilling.services.execution_ledger import ABANDONED_MESSAGE, ExecutionLedger
from clubbilling.services.worker_result import MAX_RECORDED_ERRORS, WorkerResult
from clubbilling.worker.scheduler import build_scheduler
from clubbilling.worker.tasks import run_worker, scheduled_job


def _result() -> WorkerResult:
    result = WorkerResult()
    result.ok()
    result.ok()
    result.skip()
    result.fail(42, ValueError("bad day"))
    result.bump("charged", 2)
    return result


def test_overlapping_start_is_refused(engine):
    ledger = ExecutionLedger(engine)
    first = ledger.start(WorkerName.billing_sweep)
    assert ledger.is_running(WorkerName.billing_sweep)

    with pytest.raises(AlreadyRunning):
        ledger.start(WorkerName.billing_sweep)
    # Other workers are independent.
    other = ledger.start(WorkerName.mandate_sync)

    ledger.complete(first.id, WorkerResult())
    ledger.complete(other.id, WorkerResult())
    assert not ledger.is_running(WorkerName.billing_sweep)
    ledger.start(WorkerName.billing_sweep)


def test_completed_run_stores_counts(engine):
    ledger = ExecutionLedger(engine)
    execution = ledger.run(
        WorkerName.dunning_sweep, _result, trigger=TriggerSource.manual, triggered_by=7
    )
    assert execution.status == WorkerStatus.completed
    assert execution.trigger == TriggerSource.manual
    assert execution.triggered_by == 7
    assert (execution.items_processed, execution.items_successful, execution.items_failed) == (
        4,
        2,
        1,
    )
    assert execution.execution_metadata["charged"] == 2
    assert execution.execution_metadata["errors"] == ["42: ValueError: bad day"]
    assert execution.error_message == "42: ValueError: bad day"
    assert execution.completed_at is not None
    assert execution.duration_ms >= 0


def test_raising_body_fails_the_run(engine):
    def body() -> WorkerResult:
        raise RuntimeError("database went away")

    ledger = ExecutionLedger(engine)
    execution = ledger.run(WorkerName.mandate_sync, body)
    assert execution.status == WorkerStatus.failed
    assert execution.error_message == "RuntimeError: database went away"
    assert not ledger.is_running(WorkerName.mandate_sync)


def test_history_and_latest(engine):
    ledger = ExecutionLedger(engine)
    for _ in range(3):
        ledger.run(WorkerName.billing_sweep, WorkerResult)
    history = ledger.history(WorkerName.billing_sweep, limit=2)
    assert len(history) == 2
    assert all(e.worker_name == WorkerName.billing_sweep.value for e in history)

    latest = ledger.latest_by_worker()
    assert set(latest) == {name.value for name in WorkerName}
    assert latest[WorkerName.billing_sweep.value].id == history[0].id
    assert latest[WorkerName.seasonal_invoices.value] is None


def test_recover_stale_frees_the_worker(engine):
    ledger = ExecutionLedger(engine)
    execution = ledger.start(WorkerName.billing_sweep)
    with Session(engine) as session:
        row = session.get(WorkerExecution, execution.id)
        row.started_at = utc_now() - timedelta(hours=3)
        session.add(row)
        session.commit()
    fresh = ledger.start(WorkerName.mandate_sync)

    assert ledger.recover_stale(timedelta(hours=1)) == 1
    with Session(engine) as session:
        row = session.get(WorkerExecution, execution.id)
        assert row.status == WorkerStatus.failed
        assert row.error_message == ABANDONED_MESSAGE
    assert ledger.is_running(WorkerName.mandate_sync)
    ledger.complete(fresh.id, WorkerResult())
    ledger.start(WorkerName.billing_sweep)


def test_run_worker_records_execution(engine, provider):
    execution = run_worker(WorkerName.billing_sweep, engine=engine, provider=provider)
    assert execution.status == WorkerStatus.completed
    assert execution.items_processed == 0


def test_scheduled_job_skips_when_running(engine):
    ledger = ExecutionLedger(engine)
    running = ledger.start(WorkerName.dunning_sweep)
    scheduled_job(WorkerName.dunning_sweep)
    history = ledger.history(WorkerName.dunning_sweep)
    assert [e.id for e in history] == [running.id]


def test_worker_result_caps_recorded_errors():
    result = WorkerResult()
    for item in range(MAX_RECORDED_ERRORS + 10):
        result.fail(item, "boom")
    assert result.failed == MAX_RECORDED_ERRORS + 10
    assert len(result.errors) == MAX_RECORDED_ERRORS


def test_scheduler_registers_every_worker():
    scheduler = build_scheduler()
    assert {job.id for job in scheduler.get_jobs()} == {name.value for name in WorkerName}
