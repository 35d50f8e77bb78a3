"""
Subscription audit log

Append-only. Every lifecycle transition and every payment outcome that
affects a subscription writes one row; rows are never updated or deleted.
"""
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, BigInteger, Column, DateTime, ForeignKey, String, Text
from sqlmodel import Field, SQLModel

from clubbilling.core.snowflake import generate_id
from clubbilling.enums import ActorType, SubscriptionEventType

from .base import utc_now


class SubscriptionEvent(SQLModel, table=True):
    __tablename__ = "subscription_events"
    id: int = Field(
        default_factory=generate_id,
        sa_column=Column(BigInteger, primary_key=True, autoincrement=False),
    )
    subscription_id: int = Field(
        sa_column=Column(
            BigInteger, ForeignKey("subscriptions.id"), index=True, nullable=False
        )
    )
    event_type: SubscriptionEventType = Field(sa_column=Column(String(32), nullable=False))

    previous_status: str | None = Field(default=None, max_length=16)
    new_status: str | None = Field(default=None, max_length=16)
    previous_tier_id: int | None = Field(
        default=None, sa_column=Column(BigInteger, nullable=True)
    )
    new_tier_id: int | None = Field(default=None, sa_column=Column(BigInteger, nullable=True))

    actor_type: ActorType = Field(sa_column=Column(String(16), nullable=False))
    actor_id: int | None = Field(default=None, sa_column=Column(BigInteger, nullable=True))
    description: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    details: dict[str, Any] | None = Field(
        default=None, sa_column=Column(JSON, nullable=True)
    )

    created_at: datetime = Field(
        default_factory=utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
