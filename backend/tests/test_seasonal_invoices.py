from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlmodel import col, select

from clubbilling.api.errors import ValidationFailed
from clubbilling.crud import billing_settings as billing_settings_crud
from clubbilling.enums import (
    ActorType,
    InvoiceStatus,
    PaymentPurpose,
    ProviderPaymentStatus,
    ScheduledJobStatus,
    ServiceChargeType,
)
from clubbilling.models import Invoice, ProviderPayment, ScheduledInvoiceJob
from clubbilling.services.payment_events import PaymentStatusChange
from clubbilling.services.seasonal_invoices import normalise_items
from clubbilling.services.state_machine import Actor

USER = Actor(ActorType.user, 100)

ITEMS = [
    {"description": "Season fee", "amount": "120.00"},
    {"description": "Kit levy", "amount": "0.50"},
]


def _configure(db, *, enabled=True, items=ITEMS, club_id=1):
    return billing_settings_crud.upsert(
        session=db,
        club_id=club_id,
        service_charge_enabled=True,
        service_charge_type=ServiceChargeType.percentage,
        service_charge_value=Decimal("2.5"),
        auto_invoice_enabled=enabled,
        default_invoice_items=items,
        invoice_due_days=14,
    )


def _job(db, scheduled_date, club_id=1):
    job = ScheduledInvoiceJob(club_id=club_id, season_id=2025, scheduled_date=scheduled_date)
    db.add(job)
    db.commit()
    db.refresh(job)
    return job


def _invoices(db, job_id):
    return list(
        db.exec(
            select(Invoice)
            .where(Invoice.scheduled_job_id == job_id)
            .order_by(col(Invoice.beneficiary_user_id))
        ).all()
    )


def test_generates_one_invoice_per_member(factory, clock, db, sink):
    tier = factory.tier()
    factory.subscription(tier, beneficiary_user_id=200)
    factory.subscription(tier, beneficiary_user_id=201)
    _configure(db)
    job = _job(db, clock.today)

    result = factory.services().invoices.run()
    assert (result.processed, result.successful, result.failed) == (1, 1, 0)
    assert result.metadata["invoices_generated"] == 2

    db.expire_all()
    assert job.status == ScheduledJobStatus.completed
    assert job.invoices_generated == 2
    invoices = _invoices(db, job.id)
    assert [i.beneficiary_user_id for i in invoices] == [200, 201]
    for invoice in invoices:
        assert invoice.subtotal == Decimal("120.50")
        assert invoice.service_charge == Decimal("3.01")
        assert invoice.total == Decimal("123.51")
        assert invoice.status == InvoiceStatus.issued
        assert invoice.due_date == clock.today + timedelta(days=14)
        assert invoice.items == ITEMS
    assert sink.types.count("invoice_generated") == 2


def test_rerun_only_fills_in_missing_members(factory, clock, db):
    tier = factory.tier()
    factory.subscription(tier, beneficiary_user_id=200)
    _configure(db)
    job = _job(db, clock.today)
    services = factory.services()
    services.invoices.run()

    # A finished job is not picked up again.
    assert services.invoices.run().processed == 0

    factory.subscription(tier, beneficiary_user_id=201)
    db.expire_all()
    job.status = ScheduledJobStatus.pending
    db.add(job)
    db.commit()
    services.invoices.run()

    db.expire_all()
    assert job.invoices_generated == 2
    assert [i.beneficiary_user_id for i in _invoices(db, job.id)] == [200, 201]


def test_cancelled_subscriptions_are_not_invoiced(factory, clock, db):
    tier = factory.tier()
    sub = factory.subscription(tier, beneficiary_user_id=200)
    factory.services().machine.cancel(sub.id, actor=USER)
    db.commit()
    _configure(db)
    job = _job(db, clock.today)
    factory.services().invoices.run()
    db.expire_all()
    assert job.status == ScheduledJobStatus.completed
    assert job.invoices_generated == 0


def test_disabled_club_fails_the_job(factory, clock, db):
    _configure(db, enabled=False)
    job = _job(db, clock.today)
    result = factory.services().invoices.run()
    assert result.failed == 1
    db.expire_all()
    assert job.status == ScheduledJobStatus.failed
    assert job.error_message == "Automatic invoicing is disabled for this club"


def test_missing_items_fail_the_job(factory, clock, db):
    _configure(db, items=[])
    job = _job(db, clock.today)
    factory.services().invoices.run()
    db.expire_all()
    assert job.status == ScheduledJobStatus.failed
    assert job.error_message == "No default invoice items configured"


def test_future_jobs_wait(factory, clock, db):
    _configure(db)
    job = _job(db, clock.today + timedelta(days=1))
    assert factory.services().invoices.run().processed == 0
    db.expire_all()
    assert job.status == ScheduledJobStatus.pending


def test_normalise_items():
    assert normalise_items([{"description": " Fee ", "amount": 10}]) == [
        {"description": "Fee", "amount": "10.00"}
    ]
    assert normalise_items(None) == []
    with pytest.raises(ValidationFailed):
        normalise_items([{"description": "Refund", "amount": "-1"}])
    with pytest.raises(ValidationFailed):
        normalise_items([{"description": "Fee", "amount": "ten"}])
    with pytest.raises(ValidationFailed):
        normalise_items([{"amount": "1"}])


def test_settings_validation(db):
    with pytest.raises(ValidationFailed):
        billing_settings_crud.upsert(
            session=db,
            club_id=1,
            service_charge_enabled=True,
            service_charge_type=ServiceChargeType.percentage,
            service_charge_value=Decimal("101"),
            auto_invoice_enabled=False,
            default_invoice_items=None,
            invoice_due_days=30,
        )


def test_invoice_payment_settles_invoice(factory, db):
    invoice = Invoice(
        club_id=1,
        payer_user_id=100,
        beneficiary_user_id=200,
        items=ITEMS,
        subtotal=Decimal("120.50"),
        service_charge=Decimal("0.00"),
        total=Decimal("120.50"),
        due_date=date(2025, 2, 14),
    )
    db.add(invoice)
    db.flush()
    payment = ProviderPayment(
        invoice_id=invoice.id,
        purpose=PaymentPurpose.invoice,
        idempotency_key=f"inv-{invoice.id}",
        amount=invoice.total,
        provider_payment_id="PMINV1",
        status=ProviderPaymentStatus.submitted,
    )
    db.add(payment)
    db.commit()
    services = factory.services()

    services.payments.apply(
        PaymentStatusChange(
            status=ProviderPaymentStatus.confirmed, source="webhook", provider_payment_id="PMINV1"
        )
    )
    db.commit()
    db.expire_all()
    assert invoice.status == InvoiceStatus.paid
    assert invoice.paid_at is not None

    services.payments.apply(
        PaymentStatusChange(
            status=ProviderPaymentStatus.charged_back,
            source="webhook",
            provider_payment_id="PMINV1",
        )
    )
    db.commit()
    db.expire_all()
    assert invoice.status == InvoiceStatus.issued
    assert invoice.paid_at is None

