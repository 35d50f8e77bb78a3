"""
Worker execution ledger model

One row per run of a named background job. A partial unique index on
``worker_name`` over ``status = 'running'`` makes "start a run" a single
atomic insert: a second concurrent start for the same name fails with an
integrity error instead of racing.
"""
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, BigInteger, Column, DateTime, Index, Integer, String, Text, text
from sqlmodel import Field, SQLModel

from clubbilling.core.snowflake import generate_id
from clubbilling.enums import TriggerSource, WorkerStatus

from .base import utc_now


class WorkerExecution(SQLModel, table=True):
    __tablename__ = "worker_executions"
    __table_args__ = (
        Index(
            "uq_worker_executions_running",
            "worker_name",
            unique=True,
            postgresql_where=text("status = 'running'"),
            sqlite_where=text("status = 'running'"),
        ),
        Index("ix_worker_executions_name_started", "worker_name", "started_at"),
    )

    id: int = Field(
        default_factory=generate_id,
        sa_column=Column(BigInteger, primary_key=True, autoincrement=False),
    )
    worker_name: str = Field(sa_column=Column(String(64), nullable=False))
    trigger: TriggerSource = Field(
        default=TriggerSource.scheduled, sa_column=Column(String(16), nullable=False)
    )
    triggered_by: int | None = Field(default=None, sa_column=Column(BigInteger, nullable=True))

    status: WorkerStatus = Field(
        default=WorkerStatus.running, sa_column=Column(String(16), nullable=False)
    )
    started_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    completed_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    duration_ms: int | None = Field(default=None, sa_column=Column(Integer, nullable=True))

    items_processed: int = Field(default=0, sa_column=Column(Integer, nullable=False, default=0))
    items_successful: int = Field(default=0, sa_column=Column(Integer, nullable=False, default=0))
    items_failed: int = Field(default=0, sa_column=Column(Integer, nullable=False, default=0))

    error_message: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    # "metadata" is reserved on declarative classes, hence the attribute name.
    execution_metadata: dict[str, Any] | None = Field(
        default=None, sa_column=Column("metadata", JSON, nullable=True)
    )
