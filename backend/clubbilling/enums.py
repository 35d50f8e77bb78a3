"""
Enumerations shared by models, services and API schemas.

Every enum subclasses ``str`` so values are stored and serialized as plain
strings.
"""
from enum import Enum


class SubscriptionStatus(str, Enum):
    """
    Subscription lifecycle.

    pending -> active -> {paused, suspended, cancelled};
    paused -> {active, cancelled}; suspended -> {active, cancelled};
    cancelled is terminal.
    """
    pending = "pending"
    active = "active"
    paused = "paused"
    cancelled = "cancelled"
    suspended = "suspended"


class BillingFrequency(str, Enum):
    monthly = "monthly"
    annual = "annual"


class MandateStatus(str, Enum):
    pending = "pending"
    active = "active"
    cancelled = "cancelled"
    failed = "failed"
    expired = "expired"


class ProviderPaymentStatus(str, Enum):
    """
    Status of one collection attempt.

    ``pending_submission`` is local only: the row is committed but the
    provider has not acknowledged it yet.
    """
    pending = "pending"
    pending_submission = "pending_submission"
    submitted = "submitted"
    confirmed = "confirmed"
    paid_out = "paid_out"
    failed = "failed"
    cancelled = "cancelled"
    charged_back = "charged_back"


TERMINAL_FAILURE_STATUSES = frozenset(
    {ProviderPaymentStatus.failed, ProviderPaymentStatus.charged_back}
)
SUCCESS_STATUSES = frozenset(
    {ProviderPaymentStatus.confirmed, ProviderPaymentStatus.paid_out}
)
IN_FLIGHT_STATUSES = frozenset(
    {
        ProviderPaymentStatus.pending,
        ProviderPaymentStatus.submitted,
        ProviderPaymentStatus.confirmed,
    }
)


class PaymentPurpose(str, Enum):
    recurring = "recurring"
    proration = "proration"
    invoice = "invoice"


class ActorType(str, Enum):
    user = "user"
    system = "system"
    webhook = "webhook"


class SubscriptionEventType(str, Enum):
    created = "created"
    activated = "activated"
    paused = "paused"
    resumed = "resumed"
    tier_changed = "tier_changed"
    cancellation_scheduled = "cancellation_scheduled"
    cancelled = "cancelled"
    suspended = "suspended"
    reactivated = "reactivated"
    billing_cycle_advanced = "billing_cycle_advanced"
    billing_blocked = "billing_blocked"
    payment_failed = "payment_failed"
    payment_succeeded = "payment_succeeded"
    retry_scheduled = "retry_scheduled"
    mandate_linked = "mandate_linked"


class NotificationType(str, Enum):
    """Lifecycle events handed to the notification sink."""
    subscription_created = "subscription_created"
    subscription_paused = "subscription_paused"
    subscription_resumed = "subscription_resumed"
    subscription_cancelled = "subscription_cancelled"
    subscription_tier_changed = "subscription_tier_changed"
    mandate_active = "mandate_active"
    payment_succeeded = "payment_succeeded"
    payment_failed = "payment_failed"
    membership_suspended = "membership_suspended"
    invoice_generated = "invoice_generated"


class WorkerName(str, Enum):
    billing_sweep = "billing_sweep"
    mandate_sync = "mandate_sync"
    dunning_sweep = "dunning_sweep"
    seasonal_invoices = "seasonal_invoices"


class WorkerStatus(str, Enum):
    running = "running"
    completed = "completed"
    failed = "failed"


class TriggerSource(str, Enum):
    scheduled = "scheduled"
    manual = "manual"


class ServiceChargeType(str, Enum):
    percentage = "percentage"
    fixed = "fixed"


class ScheduledJobStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"


class InvoiceStatus(str, Enum):
    issued = "issued"
    paid = "paid"
    cancelled = "cancelled"
