"""
Provider webhook log

Stores each provider event once. The unique ``provider_event_id`` is what
makes webhook redelivery idempotent: a duplicate insert fails and the event
is acknowledged without being applied again.
"""
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, BigInteger, Boolean, Column, DateTime, String, Text
from sqlmodel import Field, SQLModel

from clubbilling.core.snowflake import generate_id

from .base import utc_now


class PaymentWebhook(SQLModel, table=True):
    __tablename__ = "payment_webhooks"
    id: int = Field(
        default_factory=generate_id,
        sa_column=Column(BigInteger, primary_key=True, autoincrement=False),
    )
    provider: str = Field(default="gocardless", max_length=32)
    provider_event_id: str = Field(
        sa_column=Column(String(64), unique=True, index=True, nullable=False)
    )
    resource_type: str = Field(sa_column=Column(String(32), nullable=False))
    action: str = Field(sa_column=Column(String(64), nullable=False))
    resource_id: str | None = Field(default=None, max_length=64)
    payload: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON, nullable=True))

    processed: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, default=False))
    processing_error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    processed_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
