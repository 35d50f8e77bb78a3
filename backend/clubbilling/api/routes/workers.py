"""
Worker routes

Manual triggers take the same ledger guard as the scheduler, synchronously,
so an overlapping run is refused with ``AlreadyRunning`` (409) before the
response is sent. The body itself runs as a background task.
"""
from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Query

from clubbilling.api.deps import EngineDep, OperatorDep, ProviderDep
from clubbilling.api.schemas import ApiEnvelope, WorkerExecutionPublic, WorkerStatusData
from clubbilling.enums import TriggerSource, WorkerName, WorkerStatus
from clubbilling.services.execution_ledger import ExecutionLedger
from clubbilling.worker.tasks import make_body

router = APIRouter(prefix="/workers", tags=["workers"])


@router.post("/{worker_name}/trigger", response_model=ApiEnvelope)
def trigger_worker(
    worker_name: WorkerName,
    caller: OperatorDep,
    engine: EngineDep,
    provider: ProviderDep,
    background_tasks: BackgroundTasks,
) -> ApiEnvelope:
    ledger = ExecutionLedger(engine)
    execution = ledger.start(
        worker_name, trigger=TriggerSource.manual, triggered_by=caller.actor_id
    )
    background_tasks.add_task(
        ledger.execute_started, execution.id, make_body(worker_name, engine, provider=provider)
    )
    return ApiEnvelope(data=WorkerExecutionPublic.model_validate(execution))


@router.get("/status", response_model=ApiEnvelope)
def worker_status(_: OperatorDep, engine: EngineDep) -> ApiEnvelope:
    latest = ExecutionLedger(engine).latest_by_worker()
    data = [
        WorkerStatusData(
            worker_name=name,
            is_running=execution is not None and execution.status == WorkerStatus.running,
            last_execution=WorkerExecutionPublic.model_validate(execution) if execution else None,
        )
        for name, execution in latest.items()
    ]
    return ApiEnvelope(data=data)


@router.get("/{worker_name}/history", response_model=ApiEnvelope)
def worker_history(
    worker_name: WorkerName,
    _: OperatorDep,
    engine: EngineDep,
    limit: int = Query(default=20, ge=1, le=100),
) -> ApiEnvelope:
    executions = ExecutionLedger(engine).history(worker_name, limit=limit)
    return ApiEnvelope(data=[WorkerExecutionPublic.model_validate(e) for e in executions])
