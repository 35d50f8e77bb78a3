"""
Worker execution ledger

Every job run, scheduled or manual, goes through ``ExecutionLedger``:

- ``start`` inserts the ``running`` row; the partial unique index on
  ``worker_name`` makes it the single atomic "is anyone else running" check,
  so a second start fails with ``AlreadyRunning``
- the body runs and returns a ``WorkerResult``
- the row is finalized ``completed`` (per-item failures are counts, not a
  failed run) or ``failed`` when the body raised

Each ledger write uses its own short session so the row is visible to other
processes while the body is still working.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import timedelta

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from clubbilling.api.errors import AlreadyRunning
from clubbilling.enums import TriggerSource, WorkerName, WorkerStatus
from clubbilling.models import WorkerExecution, utc_now
from clubbilling.services.worker_result import WorkerResult

logger = logging.getLogger(__name__)

ABANDONED_MESSAGE = "Abandoned: the process running it stopped before it finished"


class ExecutionLedger:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def start(
        self,
        worker_name: WorkerName | str,
        *,
        trigger: TriggerSource = TriggerSource.scheduled,
        triggered_by: int | None = None,
    ) -> WorkerExecution:
        name = WorkerName(worker_name)
        with Session(self.engine) as session:
            execution = WorkerExecution(
                worker_name=name.value,
                trigger=trigger,
                triggered_by=triggered_by,
                status=WorkerStatus.running,
            )
            session.add(execution)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                raise AlreadyRunning(f"Worker {name.value} is already running")
            session.refresh(execution)
            logger.info("Worker %s started (%s, run %s)", name.value, trigger, execution.id)
            return execution

    def complete(
        self, execution_id: int, result: WorkerResult, *, duration_ms: int | None = None
    ) -> WorkerExecution:
        return self._finish(
            execution_id,
            status=WorkerStatus.completed,
            result=result,
            error_message="; ".join(result.errors[:5]) or None,
            duration_ms=duration_ms,
        )

    def fail(
        self, execution_id: int, error_message: str, *, duration_ms: int | None = None
    ) -> WorkerExecution:
        return self._finish(
            execution_id,
            status=WorkerStatus.failed,
            result=None,
            error_message=error_message,
            duration_ms=duration_ms,
        )

    def run(
        self,
        worker_name: WorkerName | str,
        body: Callable[[], WorkerResult],
        *,
        trigger: TriggerSource = TriggerSource.scheduled,
        triggered_by: int | None = None,
    ) -> WorkerExecution:
        """Start, execute and finalize. Raises only ``AlreadyRunning``."""
        execution = self.start(worker_name, trigger=trigger, triggered_by=triggered_by)
        return self.execute_started(execution.id, body)

    def execute_started(
        self, execution_id: int, body: Callable[[], WorkerResult]
    ) -> WorkerExecution:
        started = time.monotonic()
        try:
            result = body()
        except Exception as exc:
            logger.exception("Worker run %s failed", execution_id)
            return self.fail(
                execution_id,
                f"{type(exc).__name__}: {exc}",
                duration_ms=_elapsed_ms(started),
            )
        return self.complete(execution_id, result, duration_ms=_elapsed_ms(started))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def is_running(self, worker_name: WorkerName | str) -> bool:
        with Session(self.engine) as session:
            statement = select(WorkerExecution.id).where(
                WorkerExecution.worker_name == WorkerName(worker_name).value,
                WorkerExecution.status == WorkerStatus.running,
            )
            return session.exec(statement).first() is not None

    def latest_by_worker(self) -> dict[str, WorkerExecution | None]:
        latest: dict[str, WorkerExecution | None] = {}
        with Session(self.engine) as session:
            for name in WorkerName:
                latest[name.value] = session.exec(
                    select(WorkerExecution)
                    .where(WorkerExecution.worker_name == name.value)
                    .order_by(col(WorkerExecution.started_at).desc(), col(WorkerExecution.id).desc())
                    .limit(1)
                ).first()
        return latest

    def history(self, worker_name: WorkerName | str, *, limit: int = 20) -> list[WorkerExecution]:
        with Session(self.engine) as session:
            statement = (
                select(WorkerExecution)
                .where(WorkerExecution.worker_name == WorkerName(worker_name).value)
                .order_by(col(WorkerExecution.started_at).desc(), col(WorkerExecution.id).desc())
                .limit(limit)
            )
            return list(session.exec(statement).all())

    def recover_stale(self, max_age: timedelta) -> int:
        """
        Fail ``running`` rows older than ``max_age``. Called at scheduler
        start-up; without it a crash mid-run would block that worker forever.
        """
        cutoff = utc_now() - max_age
        with Session(self.engine) as session:
            stale = session.exec(
                select(WorkerExecution).where(
                    WorkerExecution.status == WorkerStatus.running,
                    col(WorkerExecution.started_at) < cutoff,
                )
            ).all()
            for execution in stale:
                execution.status = WorkerStatus.failed
                execution.completed_at = utc_now()
                execution.error_message = ABANDONED_MESSAGE
                session.add(execution)
                logger.warning(
                    "Marked abandoned %s run %s as failed", execution.worker_name, execution.id
                )
            session.commit()
            return len(stale)

    def _finish(
        self,
        execution_id: int,
        *,
        status: WorkerStatus,
        result: WorkerResult | None,
        error_message: str | None,
        duration_ms: int | None,
    ) -> WorkerExecution:
        with Session(self.engine) as session:
            execution = session.get(WorkerExecution, execution_id)
            if execution is None:
                raise ValueError(f"Worker execution {execution_id} not found")
            execution.status = status
            execution.completed_at = utc_now()
            execution.duration_ms = duration_ms
            execution.error_message = error_message
            if result is not None:
                execution.items_processed = result.processed
                execution.items_successful = result.successful
                execution.items_failed = result.failed
                execution.execution_metadata = {**result.metadata, "errors": result.errors}
            session.add(execution)
            session.commit()
            session.refresh(execution)
            logger.info(
                "Worker %s run %s %s: %d processed, %d failed",
                execution.worker_name,
                execution.id,
                status.value,
                execution.items_processed,
                execution.items_failed,
            )
            return execution


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
