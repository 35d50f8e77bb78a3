"""
Seasonal invoice models

``ScheduledInvoiceJob`` asks for one club's season invoices to be generated
on a given day; the ``seasonal_invoices`` worker turns each due job into one
``Invoice`` per billed member.
"""
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlmodel import Field, SQLModel

from clubbilling.core.snowflake import generate_id
from clubbilling.enums import InvoiceStatus, ScheduledJobStatus

from .base import utc_now


class ScheduledInvoiceJob(SQLModel, table=True):
    __tablename__ = "scheduled_invoice_jobs"
    id: int = Field(
        default_factory=generate_id,
        sa_column=Column(BigInteger, primary_key=True, autoincrement=False),
    )
    club_id: int = Field(sa_column=Column(BigInteger, index=True, nullable=False))
    season_id: int | None = Field(default=None, sa_column=Column(BigInteger, nullable=True))
    scheduled_date: date = Field(sa_column=Column(Date, index=True, nullable=False))

    status: ScheduledJobStatus = Field(
        default=ScheduledJobStatus.pending, sa_column=Column(String(16), nullable=False)
    )
    invoices_generated: int = Field(default=0, sa_column=Column(Integer, nullable=False, default=0))
    error_message: str | None = Field(default=None, sa_column=Column(Text, nullable=True))

    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    processed_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )


class Invoice(SQLModel, table=True):
    __tablename__ = "invoices"
    __table_args__ = (
        UniqueConstraint(
            "scheduled_job_id", "beneficiary_user_id", name="uq_invoices_job_beneficiary"
        ),
    )

    id: int = Field(
        default_factory=generate_id,
        sa_column=Column(BigInteger, primary_key=True, autoincrement=False),
    )
    club_id: int = Field(sa_column=Column(BigInteger, index=True, nullable=False))
    season_id: int | None = Field(default=None, sa_column=Column(BigInteger, nullable=True))
    scheduled_job_id: int | None = Field(
        default=None,
        sa_column=Column(
            BigInteger, ForeignKey("scheduled_invoice_jobs.id"), index=True, nullable=True
        ),
    )
    payer_user_id: int = Field(sa_column=Column(BigInteger, index=True, nullable=False))
    beneficiary_user_id: int = Field(sa_column=Column(BigInteger, nullable=False))

    items: list[dict[str, Any]] = Field(sa_column=Column(JSON, nullable=False))
    subtotal: Decimal = Field(sa_column=Column(Numeric(10, 2), nullable=False))
    service_charge: Decimal = Field(
        default=Decimal("0.00"), sa_column=Column(Numeric(10, 2), nullable=False)
    )
    total: Decimal = Field(sa_column=Column(Numeric(10, 2), nullable=False))
    currency: str = Field(default="GBP", max_length=8)

    status: InvoiceStatus = Field(
        default=InvoiceStatus.issued, sa_column=Column(String(16), nullable=False)
    )
    due_date: date | None = Field(default=None, sa_column=Column(Date, nullable=True))
    paid_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
