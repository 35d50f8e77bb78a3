"""
Membership tier model

A tier is the price template a subscription snapshots from. Editing a tier
never touches existing subscriptions: ``Subscription.amount`` is copied at
subscribe / tier-change time.
"""
from datetime import datetime
from decimal import Decimal

from sqlalchemy import BigInteger, Boolean, Column, DateTime, Numeric, String
from sqlmodel import Field, SQLModel

from clubbilling.core.snowflake import generate_id

from .base import utc_now


class MembershipTier(SQLModel, table=True):
    __tablename__ = "membership_tiers"
    id: int = Field(
        default_factory=generate_id,
        sa_column=Column(BigInteger, primary_key=True, autoincrement=False),
    )
    club_id: int = Field(sa_column=Column(BigInteger, index=True, nullable=False))
    name: str = Field(sa_column=Column(String(128), nullable=False))

    monthly_price: Decimal = Field(sa_column=Column(Numeric(10, 2), nullable=False))
    # Annual billing is only offered when an annual price is set.
    annual_price: Decimal | None = Field(
        default=None, sa_column=Column(Numeric(10, 2), nullable=True)
    )
    currency: str = Field(default="GBP", max_length=8)
    is_active: bool = Field(
        default=True, sa_column=Column(Boolean, nullable=False, default=True)
    )

    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
