"""
Seasonal invoice generation

Turns each due ``ScheduledInvoiceJob`` into one invoice per member of the
club with an open subscription, priced from the club's default invoice
items plus its service charge. Rerunning a job only fills in the members
it has not invoiced yet.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import date, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlmodel import Session, col, select

from clubbilling.api.errors import ValidationFailed
from clubbilling.core.config import settings
from clubbilling.crud import billing_settings as billing_settings_crud
from clubbilling.enums import NotificationType, ScheduledJobStatus, SubscriptionStatus
from clubbilling.models import Invoice, ScheduledInvoiceJob, Subscription, utc_now, utc_today
from clubbilling.services import notifications
from clubbilling.services.money import ZERO, round_money
from clubbilling.services.service_charge import calculate_service_charge
from clubbilling.services.worker_result import WorkerResult

logger = logging.getLogger(__name__)


def normalise_items(raw_items: list[dict[str, Any]] | None) -> list[dict[str, str]]:
    """Validate ``[{"description", "amount"}]`` and render amounts as strings."""
    items: list[dict[str, str]] = []
    for raw in raw_items or []:
        description = str(raw.get("description") or "").strip()
        try:
            amount = round_money(Decimal(str(raw.get("amount"))))
        except (InvalidOperation, TypeError, ValueError):
            raise ValidationFailed(f"Invoice item {description or raw!r} has an invalid amount")
        if not description:
            raise ValidationFailed("Invoice items need a description")
        if amount < ZERO:
            raise ValidationFailed(f"Invoice item {description} has a negative amount")
        items.append({"description": description, "amount": str(amount)})
    return items


class SeasonalInvoiceGenerator:
    def __init__(self, session: Session, *, today: Callable[[], date] = utc_today) -> None:
        self.session = session
        self.today = today

    def run(self) -> WorkerResult:
        result = WorkerResult()
        statement = (
            select(ScheduledInvoiceJob.id)
            .where(ScheduledInvoiceJob.status == ScheduledJobStatus.pending)
            .where(col(ScheduledInvoiceJob.scheduled_date) <= self.today())
            .order_by(col(ScheduledInvoiceJob.scheduled_date))
        )
        for job_id in self.session.exec(statement).all():
            try:
                job = self.generate_for_job(job_id)
            except Exception as exc:
                self.session.rollback()
                logger.exception("Invoice job %s failed", job_id)
                self._mark_failed(job_id, f"{type(exc).__name__}: {exc}")
                result.fail(job_id, exc)
                continue
            if job.status == ScheduledJobStatus.completed:
                result.ok()
                result.bump("invoices_generated", job.invoices_generated)
            else:
                result.fail(job_id, job.error_message)
        return result

    def generate_for_job(self, job_id: int) -> ScheduledInvoiceJob:
        """Process one job and commit. Returns the job in its final status."""
        job = self.session.get(ScheduledInvoiceJob, job_id, with_for_update=True)
        if job is None:
            raise ValueError(f"Invoice job {job_id} not found")
        if job.status != ScheduledJobStatus.pending:
            return job
        job.status = ScheduledJobStatus.processing
        self.session.add(job)
        self.session.flush()

        club_settings = billing_settings_crud.get(session=self.session, club_id=job.club_id)
        if club_settings is None or not club_settings.auto_invoice_enabled:
            return self._finish(
                job, ScheduledJobStatus.failed, "Automatic invoicing is disabled for this club"
            )
        items = normalise_items(club_settings.default_invoice_items)
        if not items:
            return self._finish(job, ScheduledJobStatus.failed, "No default invoice items configured")

        subtotal = round_money(sum((Decimal(i["amount"]) for i in items), ZERO))
        service_charge = calculate_service_charge(club_settings, subtotal)
        total = round_money(subtotal + service_charge)
        due_date = self.today() + timedelta(days=club_settings.invoice_due_days)

        already_invoiced = set(
            self.session.exec(
                select(Invoice.beneficiary_user_id).where(Invoice.scheduled_job_id == job.id)
            ).all()
        )
        members = self.session.exec(
            select(Subscription.payer_user_id, Subscription.beneficiary_user_id)
            .where(Subscription.club_id == job.club_id)
            .where(Subscription.status != SubscriptionStatus.cancelled)
            .order_by(col(Subscription.created_at))
        ).all()

        created = 0
        for payer_user_id, beneficiary_user_id in members:
            if beneficiary_user_id in already_invoiced:
                continue
            already_invoiced.add(beneficiary_user_id)
            invoice = Invoice(
                club_id=job.club_id,
                season_id=job.season_id,
                scheduled_job_id=job.id,
                payer_user_id=payer_user_id,
                beneficiary_user_id=beneficiary_user_id,
                items=items,
                subtotal=subtotal,
                service_charge=service_charge,
                total=total,
                currency=settings.DEFAULT_CURRENCY,
                due_date=due_date,
            )
            self.session.add(invoice)
            self.session.flush()
            created += 1
            notifications.enqueue(
                self.session,
                notifications.LifecycleEvent(
                    event_type=NotificationType.invoice_generated,
                    club_id=job.club_id,
                    payer_user_id=payer_user_id,
                    payload={
                        "invoice_id": invoice.id,
                        "beneficiary_user_id": beneficiary_user_id,
                        "total": str(total),
                        "currency": invoice.currency,
                        "due_date": due_date.isoformat(),
                    },
                ),
            )

        job.invoices_generated = (job.invoices_generated or 0) + created
        logger.info("Invoice job %s generated %d invoices", job.id, created)
        return self._finish(job, ScheduledJobStatus.completed, None)

    def _finish(
        self, job: ScheduledInvoiceJob, status: ScheduledJobStatus, error: str | None
    ) -> ScheduledInvoiceJob:
        job.status = status
        job.error_message = error
        job.processed_at = utc_now()
        self.session.add(job)
        self.session.commit()
        return job

    def _mark_failed(self, job_id: int, error: str) -> None:
        job = self.session.get(ScheduledInvoiceJob, job_id)
        if job is None:
            return
        self._finish(job, ScheduledJobStatus.failed, error)
