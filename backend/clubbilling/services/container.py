"""
Service wiring

Builds the billing components for one session. Each component only gets the
narrow collaborators it needs; the two back-references (tier-change
adjustments need the billing engine, the billing engine needs the payment
ingestor which needs dunning which needs the state machine) are closed here.
"""
from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import date

from sqlmodel import Session

from clubbilling.integrations.gocardless import PaymentProvider, get_payment_provider
from clubbilling.models import utc_today
from clubbilling.services.billing_engine import BillingCycleEngine
from clubbilling.services.config_service import DunningPolicy, load_dunning_policy
from clubbilling.services.diagnostics import DiagnosticsService
from clubbilling.services.dunning import DunningEngine
from clubbilling.services.mandate_sync import MandateSynchronizer
from clubbilling.services.payment_events import PaymentEventIngestor
from clubbilling.services.seasonal_invoices import SeasonalInvoiceGenerator
from clubbilling.services.state_machine import SubscriptionStateMachine


@dataclass
class BillingServices:
    session: Session
    machine: SubscriptionStateMachine
    dunning: DunningEngine
    payments: PaymentEventIngestor
    billing: BillingCycleEngine
    mandates: MandateSynchronizer
    diagnostics: DiagnosticsService
    invoices: SeasonalInvoiceGenerator


def build_services(
    session: Session,
    *,
    provider: PaymentProvider | None = None,
    today: Callable[[], date] = utc_today,
    policy_loader: Callable[[Session], DunningPolicy] = load_dunning_policy,
) -> BillingServices:
    provider = provider or get_payment_provider()
    machine = SubscriptionStateMachine(session, today=today)
    dunning = DunningEngine(
        session, transitions=machine, policy_loader=policy_loader, today=today
    )
    payments = PaymentEventIngestor(session, dunning=dunning)
    billing = BillingCycleEngine(
        session, machine=machine, provider=provider, payments=payments, today=today
    )
    machine.adjustment_sink = billing.collect_adjustment
    return BillingServices(
        session=session,
        machine=machine,
        dunning=dunning,
        payments=payments,
        billing=billing,
        mandates=MandateSynchronizer(
            session, provider=provider, machine=machine, payments=payments
        ),
        diagnostics=DiagnosticsService(session),
        invoices=SeasonalInvoiceGenerator(session, today=today),
    )
