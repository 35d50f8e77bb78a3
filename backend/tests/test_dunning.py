from __future__ import annotations

from datetime import date

import pytest
from sqlmodel import col, select

from clubbilling.enums import (
    ActorType,
    PaymentPurpose,
    ProviderPaymentStatus,
    SubscriptionStatus,
)
from clubbilling.models import ProviderPayment
from clubbilling.services.config_service import (
    DunningPolicy,
    load_dunning_policy,
    save_dunning_policy,
)
from clubbilling.services.container import build_services
from clubbilling.services.dunning import EXHAUSTED_REASON
from clubbilling.services.payment_events import PaymentStatusChange
from clubbilling.services.state_machine import Actor

USER = Actor(ActorType.user, 100)


def _bill_first_period(factory, clock):
    tier = factory.tier()
    factory.mandate()
    sub = factory.subscription(tier)
    services = factory.services()
    clock.today = date(2025, 2, 28)
    services.billing.run_sweep()
    payment = factory.session.exec(
        select(ProviderPayment).where(ProviderPayment.subscription_id == sub.id)
    ).one()
    return sub, services, payment


def _webhook(services, provider_payment_id, status):
    payment = services.payments.apply(
        PaymentStatusChange(
            status=status,
            source="webhook",
            provider_payment_id=provider_payment_id,
            reason="insufficient_funds" if status == ProviderPaymentStatus.failed else None,
        )
    )
    services.session.commit()
    return payment


def _latest_payment(db, subscription_id):
    return db.exec(
        select(ProviderPayment)
        .where(ProviderPayment.subscription_id == subscription_id)
        .order_by(col(ProviderPayment.retry_count).desc())
    ).first()


def test_backoff_for_repeats_last_value():
    policy = DunningPolicy(retry_limit=3, backoff_days=[1, 3, 7])
    assert [policy.backoff_for(n) for n in (1, 2, 3, 4)] == [1, 3, 7, 7]
    assert policy.backoff_for(0) == 1


@pytest.mark.parametrize(
    "raw",
    [
        {"retry_limit": 0, "backoff_days": [1]},
        {"retry_limit": 3, "backoff_days": []},
        {"retry_limit": 3, "backoff_days": [1, 0]},
    ],
)
def test_invalid_policies_are_rejected(raw):
    with pytest.raises(ValueError):
        DunningPolicy.model_validate(raw)


def test_three_failures_suspend_the_subscription(factory, clock, db, provider, sink):
    sub, services, first = _bill_first_period(factory, clock)

    _webhook(services, first.provider_payment_id, ProviderPaymentStatus.failed)
    db.expire_all()
    assert sub.failed_payment_count == 1
    assert first.next_retry_at == date(2025, 3, 1)
    assert first.failure_reason == "insufficient_funds"

    clock.today = date(2025, 3, 1)
    result = services.dunning.run_retry_sweep(services.billing)
    assert result.metadata == {"retry_submitted": 1}
    db.expire_all()
    second = _latest_payment(db, sub.id)
    assert second.retry_of_id == first.id
    assert second.idempotency_key == f"{first.idempotency_key}-retry-1"
    assert second.period_start == first.period_start
    assert first.next_retry_at is None

    _webhook(services, second.provider_payment_id, ProviderPaymentStatus.failed)
    db.expire_all()
    assert sub.failed_payment_count == 2
    assert second.next_retry_at == date(2025, 3, 4)

    # Not yet due.
    clock.today = date(2025, 3, 3)
    assert services.dunning.run_retry_sweep(services.billing).processed == 0

    clock.today = date(2025, 3, 4)
    services.dunning.run_retry_sweep(services.billing)
    db.expire_all()
    third = _latest_payment(db, sub.id)
    assert third.retry_count == 2
    assert third.idempotency_key == f"{second.idempotency_key}-retry-2"

    _webhook(services, third.provider_payment_id, ProviderPaymentStatus.failed)
    db.expire_all()
    assert sub.failed_payment_count == 3
    assert sub.status == SubscriptionStatus.suspended
    assert sub.suspension_reason == EXHAUSTED_REASON
    assert third.next_retry_at is None
    assert sink.types.count("payment_failed") == 3
    assert sink.types[-1] == "membership_suspended"
    assert len(provider.submissions) == 3


def test_success_resets_failure_count(factory, clock, db):
    sub, services, first = _bill_first_period(factory, clock)
    _webhook(services, first.provider_payment_id, ProviderPaymentStatus.failed)

    clock.today = date(2025, 3, 1)
    services.dunning.run_retry_sweep(services.billing)
    db.expire_all()
    retry = _latest_payment(db, sub.id)
    _webhook(services, retry.provider_payment_id, ProviderPaymentStatus.confirmed)

    db.expire_all()
    assert sub.failed_payment_count == 0
    assert sub.status == SubscriptionStatus.active
    assert retry.status == ProviderPaymentStatus.confirmed


def test_late_success_reactivates_exhausted_subscription(factory, clock, db, sink):
    sub, _, first = _bill_first_period(factory, clock)
    save_dunning_policy(db, DunningPolicy(retry_limit=1, backoff_days=[2]))
    db.commit()
    assert load_dunning_policy(db).retry_limit == 1

    # A one-off collection still in flight when the recurring charge fails.
    in_flight = ProviderPayment(
        subscription_id=sub.id,
        mandate_id=first.mandate_id,
        purpose=PaymentPurpose.proration,
        idempotency_key=f"sub-{sub.id}-adj-1",
        amount=first.amount,
        provider_payment_id="PM9001",
        status=ProviderPaymentStatus.submitted,
    )
    db.add(in_flight)
    db.commit()

    services = factory.services()
    _webhook(services, first.provider_payment_id, ProviderPaymentStatus.failed)
    db.expire_all()
    assert sub.status == SubscriptionStatus.suspended
    assert first.next_retry_at is None

    _webhook(services, "PM9001", ProviderPaymentStatus.paid_out)
    db.expire_all()
    assert sub.status == SubscriptionStatus.active
    assert sub.failed_payment_count == 0
    assert sub.suspension_reason is None
    assert "payment_succeeded" in sink.types


def test_custom_policy_loader(factory, clock, db, provider):
    sub, _, first = _bill_first_period(factory, clock)
    services = build_services(
        db,
        provider=provider,
        today=clock,
        policy_loader=lambda _: DunningPolicy(retry_limit=5, backoff_days=[10]),
    )
    _webhook(services, first.provider_payment_id, ProviderPaymentStatus.failed)
    db.expire_all()
    assert first.next_retry_at == date(2025, 3, 10)
    assert sub.status == SubscriptionStatus.active


def test_duplicate_and_stale_statuses(factory, clock, db):
    sub, services, first = _bill_first_period(factory, clock)

    _webhook(services, first.provider_payment_id, ProviderPaymentStatus.failed)
    _webhook(services, first.provider_payment_id, ProviderPaymentStatus.failed)
    db.expire_all()
    assert sub.failed_payment_count == 1

    # A failure is only ever followed by a charge back.
    _webhook(services, first.provider_payment_id, ProviderPaymentStatus.confirmed)
    db.expire_all()
    assert first.status == ProviderPaymentStatus.failed
    assert sub.failed_payment_count == 1


def test_out_of_order_progress_is_ignored(factory, clock, db):
    sub, services, first = _bill_first_period(factory, clock)
    _webhook(services, first.provider_payment_id, ProviderPaymentStatus.paid_out)
    _webhook(services, first.provider_payment_id, ProviderPaymentStatus.confirmed)
    db.expire_all()
    assert first.status == ProviderPaymentStatus.paid_out
    assert first.paid_out_at is not None


def test_charge_back_after_payout_counts_as_failure(factory, clock, db):
    sub, services, first = _bill_first_period(factory, clock)
    _webhook(services, first.provider_payment_id, ProviderPaymentStatus.paid_out)
    _webhook(services, first.provider_payment_id, ProviderPaymentStatus.charged_back)
    db.expire_all()
    assert first.status == ProviderPaymentStatus.charged_back
    assert sub.failed_payment_count == 1
    assert first.next_retry_at == date(2025, 3, 1)


def test_unknown_payment_is_ignored(factory, db):
    services = factory.services()
    assert (
        services.payments.apply(
            PaymentStatusChange(
                status=ProviderPaymentStatus.failed, source="webhook", provider_payment_id="PM404"
            )
        )
        is None
    )


def test_paused_subscription_keeps_retry_but_sweep_waits(factory, clock, db, provider):
    sub, services, first = _bill_first_period(factory, clock)
    services.machine.pause(sub.id, actor=USER)
    db.commit()
    _webhook(services, first.provider_payment_id, ProviderPaymentStatus.failed)
    db.expire_all()
    assert first.next_retry_at == date(2025, 3, 1)

    clock.today = date(2025, 3, 1)
    assert services.dunning.run_retry_sweep(services.billing).processed == 0
    assert len(provider.submissions) == 1

