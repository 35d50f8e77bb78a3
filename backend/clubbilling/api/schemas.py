"""
API request/response schemas

These are not tables, only the shapes exchanged over HTTP. Every response
is wrapped in ``ApiEnvelope``.
"""
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from clubbilling.enums import (
    BillingFrequency,
    MandateStatus,
    ServiceChargeType,
    SubscriptionStatus,
    TriggerSource,
    WorkerStatus,
)

# ============================================================
# Envelope
# ============================================================


class ApiEnvelope(BaseModel):
    """
    Uniform response body.

        {"code": 0, "message": "success", "data": {...}}
        {"code": 409002, "message": "...", "data": {"reason": "MandateNotReady"}}
    """
    code: int = 0
    message: str = "success"
    data: Any | None = None


# ============================================================
# Tiers
# ============================================================


class TierCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    monthly_price: Decimal
    annual_price: Decimal | None = None
    currency: str | None = Field(default=None, max_length=8)


class TierUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=128)
    monthly_price: Decimal | None = None
    annual_price: Decimal | None = None
    is_active: bool | None = None


class TierPublic(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    club_id: int
    name: str
    monthly_price: Decimal
    annual_price: Decimal | None = None
    currency: str
    is_active: bool


# ============================================================
# Mandates
# ============================================================


class MandateCreateRequest(BaseModel):
    payer_user_id: int
    provider_mandate_id: str = Field(min_length=1, max_length=64)
    provider_customer_id: str | None = None
    scheme: str | None = None
    make_default: bool | None = None


class MandatePublic(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    club_id: int
    payer_user_id: int
    provider: str
    provider_mandate_id: str
    scheme: str | None = None
    status: MandateStatus
    provider_status: MandateStatus | None = None
    provider_checked_at: datetime | None = None
    is_default: bool


# ============================================================
# Subscriptions
# ============================================================


class SubscriptionCreateRequest(BaseModel):
    payer_user_id: int
    beneficiary_user_id: int | None = None
    tier_id: int
    billing_frequency: BillingFrequency = BillingFrequency.monthly
    # Range checked by the billing calendar so a bad day is a 400, not a 422.
    billing_day_of_month: int | None = None
    mandate_id: int | None = None
    provider_subscription_id: str | None = None


class SubscriptionPublic(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    club_id: int
    payer_user_id: int
    beneficiary_user_id: int
    tier_id: int
    mandate_id: int | None = None
    status: SubscriptionStatus
    billing_frequency: BillingFrequency
    billing_day_of_month: int
    amount: Decimal
    currency: str
    credit_balance: Decimal
    current_period_start: date | None = None
    current_period_end: date | None = None
    next_billing_date: date | None = None
    failed_payment_count: int
    last_failed_payment_date: datetime | None = None
    paused_at: datetime | None = None
    resume_date: date | None = None
    cancel_at_period_end: bool
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None
    suspended_at: datetime | None = None
    suspension_reason: str | None = None
    provider_subscription_id: str | None = None
    created_at: datetime
    updated_at: datetime


class SubscriptionEventPublic(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    subscription_id: int
    event_type: str
    previous_status: str | None = None
    new_status: str | None = None
    previous_tier_id: int | None = None
    new_tier_id: int | None = None
    actor_type: str
    actor_id: int | None = None
    description: str | None = None
    details: dict[str, Any] | None = None
    created_at: datetime


class ChangeTierRequest(BaseModel):
    tier_id: int
    prorate: bool = True


class ChangeTierData(BaseModel):
    subscription: SubscriptionPublic
    adjustment: Decimal | None = None
    days_remaining: int | None = None
    total_days: int | None = None
    credit_added: Decimal
    adjustment_payment_id: int | None = None


class PauseRequest(BaseModel):
    resume_date: date | None = None


class CancelRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=255)
    immediate: bool = False


# ============================================================
# Workers
# ============================================================


class WorkerExecutionPublic(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    worker_name: str
    trigger: TriggerSource
    triggered_by: int | None = None
    status: WorkerStatus
    started_at: datetime
    completed_at: datetime | None = None
    duration_ms: int | None = None
    items_processed: int
    items_successful: int
    items_failed: int
    error_message: str | None = None
    metadata: dict[str, Any] | None = Field(
        default=None, validation_alias="execution_metadata"
    )


class WorkerStatusData(BaseModel):
    worker_name: str
    is_running: bool
    last_execution: WorkerExecutionPublic | None = None


# ============================================================
# Billing configuration
# ============================================================


class DunningPolicyData(BaseModel):
    retry_limit: int
    backoff_days: list[int]


class InvoiceItem(BaseModel):
    description: str = Field(min_length=1, max_length=255)
    amount: Decimal = Field(ge=0)


class ClubBillingSettingsRequest(BaseModel):
    service_charge_enabled: bool = False
    service_charge_type: ServiceChargeType = ServiceChargeType.percentage
    service_charge_value: Decimal = Decimal("0.00")
    auto_invoice_enabled: bool = False
    default_invoice_items: list[InvoiceItem] = Field(default_factory=list)
    invoice_due_days: int = 30


class ClubBillingSettingsPublic(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    club_id: int
    service_charge_enabled: bool
    service_charge_type: ServiceChargeType
    service_charge_value: Decimal
    auto_invoice_enabled: bool
    default_invoice_items: list[dict[str, Any]] | None = None
    invoice_due_days: int
    updated_at: datetime


# ============================================================
# Webhooks
# ============================================================


class WebhookResultData(BaseModel):
    received: int
    processed: int
    duplicates: int
    failed: int = 0
