"""
Database models

- tier.py: membership tiers (price templates)
- mandate.py: payer Direct Debit mandates
- subscription.py: recurring subscriptions
- payment.py: collection attempts at the provider
- event.py: subscription audit log
- worker.py: worker execution ledger
- webhook.py: provider webhook log
- billing.py: club billing settings and dunning policy
- invoice.py: seasonal invoice jobs and invoices
"""
from sqlmodel import SQLModel

from .base import utc_now, utc_today
from .billing import ClubBillingSettings, DunningPolicyRecord
from .event import SubscriptionEvent
from .invoice import Invoice, ScheduledInvoiceJob
from .mandate import PaymentMandate
from .payment import ProviderPayment
from .subscription import Subscription
from .tier import MembershipTier
from .webhook import PaymentWebhook
from .worker import WorkerExecution

__all__ = [
    "SQLModel",
    "utc_now",
    "utc_today",
    "MembershipTier",
    "PaymentMandate",
    "Subscription",
    "ProviderPayment",
    "SubscriptionEvent",
    "WorkerExecution",
    "PaymentWebhook",
    "ClubBillingSettings",
    "DunningPolicyRecord",
    "ScheduledInvoiceJob",
    "Invoice",
]
