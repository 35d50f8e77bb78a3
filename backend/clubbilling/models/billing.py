"""
Billing configuration models

- ClubBillingSettings: per-club service charge and seasonal invoice defaults
- DunningPolicyRecord: deployment-wide retry limit and backoff curve; the
  newest row is the live policy
"""
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import JSON, BigInteger, Boolean, Column, DateTime, Integer, Numeric, String
from sqlmodel import Field, SQLModel

from clubbilling.core.snowflake import generate_id
from clubbilling.enums import ServiceChargeType

from .base import utc_now


class ClubBillingSettings(SQLModel, table=True):
    __tablename__ = "club_billing_settings"
    id: int = Field(
        default_factory=generate_id,
        sa_column=Column(BigInteger, primary_key=True, autoincrement=False),
    )
    club_id: int = Field(sa_column=Column(BigInteger, unique=True, index=True, nullable=False))

    service_charge_enabled: bool = Field(
        default=False, sa_column=Column(Boolean, nullable=False, default=False)
    )
    service_charge_type: ServiceChargeType = Field(
        default=ServiceChargeType.percentage, sa_column=Column(String(16), nullable=False)
    )
    service_charge_value: Decimal = Field(
        default=Decimal("0.00"), sa_column=Column(Numeric(10, 2), nullable=False)
    )

    auto_invoice_enabled: bool = Field(
        default=False, sa_column=Column(Boolean, nullable=False, default=False)
    )
    # [{"description": "Season fee", "amount": "120.00"}, ...]
    default_invoice_items: list[dict[str, Any]] | None = Field(
        default=None, sa_column=Column(JSON, nullable=True)
    )
    invoice_due_days: int = Field(default=30, sa_column=Column(Integer, nullable=False, default=30))

    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )


class DunningPolicyRecord(SQLModel, table=True):
    __tablename__ = "dunning_policies"
    id: int = Field(
        default_factory=generate_id,
        sa_column=Column(BigInteger, primary_key=True, autoincrement=False),
    )
    retry_limit: int = Field(sa_column=Column(Integer, nullable=False))
    backoff_days: list[int] = Field(sa_column=Column(JSON, nullable=False))
    updated_by: str | None = Field(default=None, max_length=64)
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
