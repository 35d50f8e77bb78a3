"""
Payment mandate model

A mandate is a payer's standing Direct Debit authorization, scoped to one
club. ``status`` is the local mirror used for billing decisions;
``provider_status`` is the last status actually observed at the provider
and is only written by the synchronizer, so the two can be compared.
"""
from datetime import datetime

from sqlalchemy import BigInteger, Boolean, Column, DateTime, Index, String, text
from sqlmodel import Field, SQLModel

from clubbilling.core.snowflake import generate_id
from clubbilling.enums import MandateStatus

from .base import utc_now


class PaymentMandate(SQLModel, table=True):
    """
    One default mandate per (club, payer) is enforced with a partial unique
    index so two concurrent "make default" requests cannot both win.
    """
    __tablename__ = "payment_mandates"
    __table_args__ = (
        Index(
            "uq_payment_mandates_default",
            "club_id",
            "payer_user_id",
            unique=True,
            postgresql_where=text("is_default"),
            sqlite_where=text("is_default = 1"),
        ),
    )

    id: int = Field(
        default_factory=generate_id,
        sa_column=Column(BigInteger, primary_key=True, autoincrement=False),
    )
    club_id: int = Field(sa_column=Column(BigInteger, index=True, nullable=False))
    payer_user_id: int = Field(sa_column=Column(BigInteger, index=True, nullable=False))

    provider: str = Field(default="gocardless", max_length=32)
    provider_mandate_id: str = Field(
        sa_column=Column(String(64), unique=True, index=True, nullable=False)
    )
    provider_customer_id: str | None = Field(default=None, max_length=64)
    scheme: str | None = Field(default=None, max_length=32)

    status: MandateStatus = Field(
        default=MandateStatus.pending, sa_column=Column(String(16), nullable=False)
    )
    provider_status: MandateStatus | None = Field(
        default=None, sa_column=Column(String(16), nullable=True)
    )
    provider_checked_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    is_default: bool = Field(
        default=False, sa_column=Column(Boolean, nullable=False, default=False)
    )

    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
