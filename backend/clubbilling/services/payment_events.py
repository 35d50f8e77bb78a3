"""
Payment status ingestion

Webhooks, the polling sync and submission rejections all end up here, so a
``failed`` payment is accounted for exactly once whichever way the news
arrived. Duplicate or stale deliveries are no-ops.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlmodel import Session, select

from clubbilling.enums import (
    SUCCESS_STATUSES,
    TERMINAL_FAILURE_STATUSES,
    InvoiceStatus,
    ProviderPaymentStatus,
)
from clubbilling.models import Invoice, ProviderPayment, utc_now
from clubbilling.services.dunning import DunningEngine
from clubbilling.services.state_machine import SYSTEM, WEBHOOK

logger = logging.getLogger(__name__)

# Forward order of the in-flight states; an older state arriving late is ignored.
_PROGRESS = {
    ProviderPaymentStatus.pending_submission: 0,
    ProviderPaymentStatus.pending: 1,
    ProviderPaymentStatus.submitted: 2,
    ProviderPaymentStatus.confirmed: 3,
    ProviderPaymentStatus.paid_out: 4,
}


@dataclass(frozen=True)
class PaymentStatusChange:
    """
    A status observed at the provider.

    ``payment_id`` (local id) is used when the provider never assigned an
    id, which is the case for a submission the provider rejected.
    """
    status: ProviderPaymentStatus
    source: str
    provider_payment_id: str | None = None
    payment_id: int | None = None
    reason: str | None = None
    payout_id: str | None = None


class PaymentEventIngestor:
    def __init__(self, session: Session, *, dunning: DunningEngine) -> None:
        self.session = session
        self.dunning = dunning

    def apply(self, change: PaymentStatusChange) -> ProviderPayment | None:
        payment = self._find(change)
        if payment is None:
            logger.info(
                "Ignoring %s status for unknown payment %s",
                change.status.value,
                change.provider_payment_id or change.payment_id,
            )
            return None

        previous = ProviderPaymentStatus(payment.status)
        new = ProviderPaymentStatus(change.status)
        if previous == new:
            return payment
        if new in _PROGRESS and previous in _PROGRESS and _PROGRESS[new] < _PROGRESS[previous]:
            logger.info(
                "Ignoring stale %s status for payment %s (already %s)",
                new.value,
                payment.id,
                previous.value,
            )
            return payment
        if previous in TERMINAL_FAILURE_STATUSES and new not in TERMINAL_FAILURE_STATUSES:
            # Only a later charge back may follow a failure.
            logger.info("Ignoring %s for failed payment %s", new.value, payment.id)
            return payment

        payment.status = new
        payment.updated_at = utc_now()
        if new in TERMINAL_FAILURE_STATUSES:
            payment.failure_reason = change.reason or payment.failure_reason
        if new == ProviderPaymentStatus.paid_out:
            payment.paid_out_at = utc_now()
            payment.payout_id = change.payout_id or payment.payout_id
        self.session.add(payment)
        self.session.flush()
        logger.info(
            "Payment %s moved %s -> %s (%s)", payment.id, previous.value, new.value, change.source
        )

        actor = WEBHOOK if change.source == "webhook" else SYSTEM
        if payment.subscription_id is not None:
            if new in TERMINAL_FAILURE_STATUSES and previous not in TERMINAL_FAILURE_STATUSES:
                self.dunning.record_failure(payment, reason=change.reason, actor=actor)
            elif new in SUCCESS_STATUSES and previous not in SUCCESS_STATUSES:
                self.dunning.record_success(payment, actor=actor)
        elif payment.invoice_id is not None:
            self._settle_invoice(payment, new)
        return payment

    def _find(self, change: PaymentStatusChange) -> ProviderPayment | None:
        if change.payment_id is not None:
            return self.session.get(ProviderPayment, change.payment_id, with_for_update=True)
        if not change.provider_payment_id:
            return None
        statement = (
            select(ProviderPayment)
            .where(ProviderPayment.provider_payment_id == change.provider_payment_id)
            .with_for_update()
        )
        return self.session.exec(statement).first()

    def _settle_invoice(self, payment: ProviderPayment, status: ProviderPaymentStatus) -> None:
        invoice = self.session.get(Invoice, payment.invoice_id)
        if invoice is None:
            return
        if status in SUCCESS_STATUSES and invoice.status == InvoiceStatus.issued:
            invoice.status = InvoiceStatus.paid
            invoice.paid_at = utc_now()
            self.session.add(invoice)
            self.session.flush()
        elif status in TERMINAL_FAILURE_STATUSES and invoice.status == InvoiceStatus.paid:
            invoice.status = InvoiceStatus.issued
            invoice.paid_at = None
            self.session.add(invoice)
            self.session.flush()
