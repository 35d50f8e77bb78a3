"""
Provider payment model

One row per collection attempt sent (or about to be sent) to the payment
provider. Rows are created by the billing engine and the dunning sweep and
afterwards only change through provider webhooks or polling.
"""
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlmodel import Field, SQLModel

from clubbilling.core.snowflake import generate_id
from clubbilling.enums import PaymentPurpose, ProviderPaymentStatus

from .base import utc_now


class ProviderPayment(SQLModel, table=True):
    """
    Collection attempt.

    Fields:
    - subscription_id / invoice_id: exactly one is set
    - idempotency_key: sent as ``Idempotency-Key``; resubmitting a stranded
      row reuses it so the provider never creates two payments
    - period_start: billing period a recurring charge pays for
    - next_retry_at: earliest day the dunning sweep may act on the row
      (retry after a failure, or resubmission after a transient error)
    - retry_of_id: the failed attempt this row retries
    """
    __tablename__ = "provider_payments"
    __table_args__ = (
        CheckConstraint(
            "(subscription_id IS NOT NULL AND invoice_id IS NULL)"
            " OR (subscription_id IS NULL AND invoice_id IS NOT NULL)",
            name="ck_provider_payments_single_owner",
        ),
    )

    id: int = Field(
        default_factory=generate_id,
        sa_column=Column(BigInteger, primary_key=True, autoincrement=False),
    )
    subscription_id: int | None = Field(
        default=None,
        sa_column=Column(
            BigInteger, ForeignKey("subscriptions.id"), index=True, nullable=True
        ),
    )
    invoice_id: int | None = Field(
        default=None,
        sa_column=Column(BigInteger, ForeignKey("invoices.id"), index=True, nullable=True),
    )
    mandate_id: int | None = Field(
        default=None,
        sa_column=Column(
            BigInteger, ForeignKey("payment_mandates.id"), index=True, nullable=True
        ),
    )
    purpose: PaymentPurpose = Field(
        default=PaymentPurpose.recurring, sa_column=Column(String(16), nullable=False)
    )

    provider: str = Field(default="gocardless", max_length=32)
    provider_payment_id: str | None = Field(
        default=None, sa_column=Column(String(64), unique=True, index=True, nullable=True)
    )
    idempotency_key: str = Field(
        sa_column=Column(String(128), unique=True, index=True, nullable=False)
    )

    amount: Decimal = Field(sa_column=Column(Numeric(10, 2), nullable=False))
    currency: str = Field(default="GBP", max_length=8)
    description: str | None = Field(default=None, max_length=255)

    status: ProviderPaymentStatus = Field(
        default=ProviderPaymentStatus.pending_submission,
        sa_column=Column(String(24), index=True, nullable=False),
    )
    charge_date: date | None = Field(default=None, sa_column=Column(Date, nullable=True))
    period_start: date | None = Field(default=None, sa_column=Column(Date, nullable=True))
    failure_reason: str | None = Field(default=None, sa_column=Column(Text, nullable=True))

    retry_count: int = Field(default=0, sa_column=Column(Integer, nullable=False, default=0))
    retry_of_id: int | None = Field(
        default=None, sa_column=Column(BigInteger, index=True, nullable=True)
    )
    next_retry_at: date | None = Field(
        default=None, sa_column=Column(Date, index=True, nullable=True)
    )

    payout_id: str | None = Field(default=None, max_length=64)
    paid_out_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    submitted_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )

    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
