"""
Subscription model

Holds the current state of a recurring membership charge. History lives in
``SubscriptionEvent``; rows here are never deleted, cancellation is a
terminal status kept for audit.
"""
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    text,
)
from sqlmodel import Field, SQLModel

from clubbilling.core.snowflake import generate_id
from clubbilling.enums import BillingFrequency, SubscriptionStatus

from .base import utc_now


class Subscription(SQLModel, table=True):
    """
    Recurring membership subscription.

    Fields:
    - payer_user_id / beneficiary_user_id: the parent who pays and the member
      (often a child) the membership is for
    - mandate_id: explicit mandate reference; when empty the payer's default
      mandate for the club is used
    - amount: tier price snapshot taken at subscribe / tier-change time
    - credit_balance: credit owed to the payer from downgrades, netted
      against the next recurring charge
    - current_period_start / current_period_end / next_billing_date:
      calendar dates of the open billing period
    - cancel_at_period_end: deferred cancellation, finalized by the billing
      sweep instead of charging the next period
    - provider_subscription_id: subscription reference held at the provider
      (imported mandates), compared by diagnostics
    """
    __tablename__ = "subscriptions"
    __table_args__ = (
        Index(
            "uq_subscriptions_open_per_tier",
            "club_id",
            "beneficiary_user_id",
            "tier_id",
            unique=True,
            postgresql_where=text("status <> 'cancelled'"),
            sqlite_where=text("status <> 'cancelled'"),
        ),
        Index("ix_subscriptions_status_next_billing", "status", "next_billing_date"),
    )

    id: int = Field(
        default_factory=generate_id,
        sa_column=Column(BigInteger, primary_key=True, autoincrement=False),
    )
    club_id: int = Field(sa_column=Column(BigInteger, index=True, nullable=False))
    payer_user_id: int = Field(sa_column=Column(BigInteger, index=True, nullable=False))
    beneficiary_user_id: int = Field(
        sa_column=Column(BigInteger, index=True, nullable=False)
    )
    tier_id: int = Field(
        sa_column=Column(
            BigInteger, ForeignKey("membership_tiers.id"), index=True, nullable=False
        )
    )
    mandate_id: int | None = Field(
        default=None,
        sa_column=Column(
            BigInteger, ForeignKey("payment_mandates.id"), index=True, nullable=True
        ),
    )

    status: SubscriptionStatus = Field(
        default=SubscriptionStatus.pending, sa_column=Column(String(16), nullable=False)
    )
    billing_frequency: BillingFrequency = Field(
        default=BillingFrequency.monthly, sa_column=Column(String(16), nullable=False)
    )
    billing_day_of_month: int = Field(sa_column=Column(Integer, nullable=False))

    amount: Decimal = Field(sa_column=Column(Numeric(10, 2), nullable=False))
    currency: str = Field(default="GBP", max_length=8)
    credit_balance: Decimal = Field(
        default=Decimal("0.00"),
        sa_column=Column(Numeric(10, 2), nullable=False, default=Decimal("0.00")),
    )

    current_period_start: date | None = Field(
        default=None, sa_column=Column(Date, nullable=True)
    )
    current_period_end: date | None = Field(
        default=None, sa_column=Column(Date, nullable=True)
    )
    next_billing_date: date | None = Field(
        default=None, sa_column=Column(Date, nullable=True)
    )

    failed_payment_count: int = Field(
        default=0, sa_column=Column(Integer, nullable=False, default=0)
    )
    last_failed_payment_date: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )

    paused_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    resume_date: date | None = Field(default=None, sa_column=Column(Date, nullable=True))

    cancel_at_period_end: bool = Field(
        default=False, sa_column=Column(Boolean, nullable=False, default=False)
    )
    cancelled_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    cancellation_reason: str | None = Field(default=None, max_length=255)

    suspended_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    suspension_reason: str | None = Field(default=None, max_length=64)

    provider_subscription_id: str | None = Field(default=None, max_length=64)
    provider_subscription_status: str | None = Field(default=None, max_length=32)
    provider_checked_at: datetime | None = Field(
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
