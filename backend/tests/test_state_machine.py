from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlmodel import select

from clubbilling.api.errors import (
    InvalidTransition,
    MandateNotReady,
    SubscriptionExists,
    ValidationFailed,
)
from clubbilling.enums import (
    ActorType,
    MandateStatus,
    PaymentPurpose,
    ProviderPaymentStatus,
    SubscriptionStatus,
)
from clubbilling.models import MembershipTier, ProviderPayment, Subscription
from clubbilling.services.state_machine import Actor, SubscriptionStateMachine

USER = Actor(ActorType.user, 100)


def _event_types(services, subscription_id):
    return [e.event_type for e in services.machine.list_events(subscription_id)]


def test_create_with_active_mandate_activates(factory, clock, sink):
    tier = factory.tier()
    factory.mandate()
    sub = factory.subscription(tier)

    assert sub.status == SubscriptionStatus.active
    assert sub.billing_day_of_month == 31
    assert sub.amount == Decimal("20.00")
    assert sub.current_period_start == clock.today
    assert sub.next_billing_date == sub.current_period_end == date(2025, 2, 28)
    assert _event_types(factory.services(), sub.id) == ["created", "activated"]
    assert sink.types == ["subscription_created"]


def test_create_without_mandate_stays_pending(factory):
    tier = factory.tier()
    sub = factory.subscription(tier, billing_day_of_month=5)
    assert sub.status == SubscriptionStatus.pending
    assert sub.next_billing_date is None

    services = factory.services()
    with pytest.raises(MandateNotReady):
        services.machine.activate(sub.id, actor=USER)


def test_create_validation(factory):
    tier = factory.tier()
    with pytest.raises(ValidationFailed):
        factory.subscription(tier, billing_frequency="annual")
    with pytest.raises(ValidationFailed):
        factory.subscription(tier, billing_day_of_month=0)
    with pytest.raises(ValidationFailed):
        factory.subscription(tier, billing_frequency="weekly")
    other_club_tier = factory.tier(club_id=2)
    with pytest.raises(ValidationFailed):
        factory.services().machine.create(
            club_id=1,
            payer_user_id=100,
            beneficiary_user_id=200,
            tier_id=other_club_tier.id,
            actor=USER,
        )
    foreign = factory.mandate(payer_user_id=999)
    with pytest.raises(ValidationFailed):
        factory.subscription(tier, mandate_id=foreign.id)


def test_annual_subscription_uses_annual_price(factory, clock):
    tier = factory.tier(monthly="20.00", annual="200.00")
    factory.mandate()
    sub = factory.subscription(tier, billing_frequency="annual", billing_day_of_month=31)
    assert sub.amount == Decimal("200.00")
    assert sub.next_billing_date == date(2026, 1, 31)


def test_one_open_subscription_per_member_and_tier(factory, db):
    tier = factory.tier()
    factory.mandate()
    sub = factory.subscription(tier)
    with pytest.raises(SubscriptionExists):
        factory.subscription(tier)
    db.rollback()

    # A sibling on the same tier is fine.
    factory.subscription(tier, beneficiary_user_id=201)

    services = factory.services()
    services.machine.cancel(sub.id, actor=USER, immediate=True)
    db.commit()
    again = factory.subscription(tier)
    assert again.id != sub.id


def test_lost_create_race_keeps_callers_work(factory, db, monkeypatch):
    tier = factory.tier()
    factory.mandate()
    sub = factory.subscription(tier)

    # Both requests passed the open-subscription check before either inserted.
    monkeypatch.setattr(
        SubscriptionStateMachine, "_ensure_no_open_subscription", lambda self, *args: None
    )
    junior = MembershipTier(club_id=1, name="Junior", monthly_price=Decimal("10.00"))
    db.add(junior)
    db.flush()
    with pytest.raises(SubscriptionExists):
        factory.services().machine.create(
            club_id=1, payer_user_id=100, beneficiary_user_id=200, tier_id=tier.id, actor=USER
        )
    db.commit()

    db.expire_all()
    assert db.get(MembershipTier, junior.id).name == "Junior"
    rows = db.exec(select(Subscription).where(Subscription.tier_id == tier.id)).all()
    assert [row.id for row in rows] == [sub.id]


def test_pause_and_resume_restart_period(factory, clock, sink):
    tier = factory.tier()
    factory.mandate()
    sub = factory.subscription(tier)
    services = factory.services()

    clock.today = date(2025, 2, 10)
    services.machine.pause(sub.id, actor=USER)
    factory.session.commit()
    assert sub.status == SubscriptionStatus.paused
    with pytest.raises(InvalidTransition):
        services.machine.pause(sub.id, actor=USER)

    clock.today = date(2025, 3, 20)
    services.machine.resume(sub.id, actor=USER)
    factory.session.commit()
    assert sub.status == SubscriptionStatus.active
    assert sub.current_period_start == date(2025, 3, 20)
    assert sub.next_billing_date == date(2025, 4, 30)
    assert _event_types(services, sub.id)[-2:] == ["paused", "resumed"]
    assert sink.types[-2:] == ["subscription_paused", "subscription_resumed"]


def test_pause_rejects_past_resume_date(factory, clock):
    tier = factory.tier()
    factory.mandate()
    sub = factory.subscription(tier)
    with pytest.raises(ValidationFailed):
        factory.services().machine.pause(sub.id, actor=USER, resume_date=clock.today)


def test_resume_requires_usable_mandate(factory, db):
    tier = factory.tier()
    mandate = factory.mandate()
    sub = factory.subscription(tier)
    services = factory.services()
    services.machine.pause(sub.id, actor=USER)
    mandate.status = MandateStatus.cancelled
    db.add(mandate)
    db.commit()
    with pytest.raises(MandateNotReady):
        services.machine.resume(sub.id, actor=USER)


def test_deferred_cancel_then_immediate(factory, db):
    tier = factory.tier()
    factory.mandate()
    sub = factory.subscription(tier)
    services = factory.services()

    services.machine.cancel(sub.id, actor=USER, reason="moving away")
    db.commit()
    assert sub.status == SubscriptionStatus.active
    assert sub.cancel_at_period_end is True
    with pytest.raises(InvalidTransition):
        services.machine.cancel(sub.id, actor=USER)

    services.machine.cancel(sub.id, actor=USER, immediate=True)
    db.commit()
    assert sub.status == SubscriptionStatus.cancelled
    assert sub.cancel_at_period_end is False
    assert sub.cancelled_at is not None


def test_cancelled_is_terminal(factory, db):
    tier = factory.tier()
    sub = factory.subscription(tier)
    services = factory.services()
    # Pending subscriptions cancel straight away.
    services.machine.cancel(sub.id, actor=USER)
    db.commit()
    assert sub.status == SubscriptionStatus.cancelled

    for attempt in (
        lambda: services.machine.pause(sub.id, actor=USER),
        lambda: services.machine.resume(sub.id, actor=USER),
        lambda: services.machine.cancel(sub.id, actor=USER),
        lambda: services.machine.activate(sub.id, actor=USER),
        lambda: services.machine.suspend(sub.id, "x"),
        lambda: services.machine.reactivate(sub.id, actor=USER),
    ):
        with pytest.raises(InvalidTransition):
            attempt()


def test_suspend_only_from_active(factory, db):
    tier = factory.tier()
    factory.mandate()
    sub = factory.subscription(tier)
    services = factory.services()
    services.machine.pause(sub.id, actor=USER)
    with pytest.raises(InvalidTransition):
        services.machine.suspend(sub.id, "mandate_cancelled")
    services.machine.resume(sub.id, actor=USER)
    services.machine.suspend(sub.id, "mandate_cancelled")
    db.commit()
    assert sub.status == SubscriptionStatus.suspended
    assert sub.suspension_reason == "mandate_cancelled"

    services.machine.reactivate(sub.id, actor=USER)
    db.commit()
    assert sub.status == SubscriptionStatus.active
    assert sub.suspension_reason is None


def test_reactivate_after_billing_date_passed_starts_new_period(factory, clock, db):
    tier = factory.tier()
    factory.mandate()
    sub = factory.subscription(tier)
    services = factory.services()
    services.machine.suspend(sub.id, "payment_failure_exhausted")
    db.commit()

    clock.today = date(2025, 4, 2)
    services.machine.reactivate(sub.id, actor=USER)
    db.commit()
    assert sub.current_period_start == date(2025, 4, 2)
    assert sub.next_billing_date == date(2025, 5, 31)


def test_upgrade_collects_adjustment(factory, clock, db, sink):
    clock.today = date(2025, 1, 1)
    basic = factory.tier(name="Basic", monthly="20.00")
    premium = factory.tier(name="Premium", monthly="30.00")
    factory.mandate()
    sub = factory.subscription(basic, billing_day_of_month=1)
    assert sub.next_billing_date == date(2025, 2, 1)

    clock.today = date(2025, 1, 17)
    services = factory.services()
    result = services.machine.change_tier(sub.id, premium.id, actor=USER)
    db.commit()

    assert sub.tier_id == premium.id
    assert sub.amount == Decimal("30.00")
    assert result.proration.adjustment == Decimal("4.84")
    payment = result.adjustment_payment
    assert payment is not None
    assert payment.purpose == PaymentPurpose.proration
    assert payment.amount == Decimal("4.84")
    assert payment.status == ProviderPaymentStatus.pending_submission
    assert sub.next_billing_date == date(2025, 2, 1)

    services.billing.submit_pending([payment])
    db.refresh(payment)
    assert payment.status == ProviderPaymentStatus.submitted
    assert factory.provider.submissions[0]["amount"] == Decimal("4.84")
    assert "subscription_tier_changed" in sink.types


def test_downgrade_adds_credit(factory, clock, db):
    clock.today = date(2025, 1, 1)
    basic = factory.tier(name="Basic", monthly="20.00")
    premium = factory.tier(name="Premium", monthly="30.00")
    factory.mandate()
    sub = factory.subscription(premium, billing_day_of_month=1)

    clock.today = date(2025, 1, 17)
    result = factory.services().machine.change_tier(sub.id, basic.id, actor=USER)
    db.commit()
    assert result.adjustment_payment is None
    assert result.credit_added == Decimal("4.84")
    assert sub.credit_balance == Decimal("4.84")
    assert db.exec(select(ProviderPayment)).first() is None


def test_change_tier_while_paused_skips_proration(factory, db):
    basic = factory.tier(name="Basic", monthly="20.00")
    premium = factory.tier(name="Premium", monthly="30.00")
    factory.mandate()
    sub = factory.subscription(basic)
    services = factory.services()
    services.machine.pause(sub.id, actor=USER)
    result = services.machine.change_tier(sub.id, premium.id, actor=USER)
    db.commit()
    assert result.proration is None
    assert sub.amount == Decimal("30.00")
    assert sub.status == SubscriptionStatus.paused

    with pytest.raises(ValidationFailed):
        services.machine.change_tier(sub.id, premium.id, actor=USER)


def test_tier_edit_does_not_touch_existing_subscriptions(factory, db):
    tier = factory.tier(monthly="20.00")
    factory.mandate()
    sub = factory.subscription(tier)
    tier.monthly_price = Decimal("25.00")
    db.add(tier)
    db.commit()
    db.refresh(sub)
    assert sub.amount == Decimal("20.00")


def test_notifications_dropped_on_rollback(factory, db, sink):
    tier = factory.tier()
    factory.mandate()
    services = factory.services()
    services.machine.create(
        club_id=1, payer_user_id=100, beneficiary_user_id=300, tier_id=tier.id, actor=USER
    )
    db.rollback()
    assert sink.events == []


def test_future_pause_resume_date(factory, clock, db):
    tier = factory.tier()
    factory.mandate()
    sub = factory.subscription(tier)
    resume_on = clock.today + timedelta(days=10)
    factory.services().machine.pause(sub.id, actor=USER, resume_date=resume_on)
    db.commit()
    assert sub.resume_date == resume_on
