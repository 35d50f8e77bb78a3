from __future__ import annotations

from datetime import date

from sqlmodel import select

from clubbilling.enums import (
    ActorType,
    MandateStatus,
    ProviderPaymentStatus,
    SubscriptionEventType,
    SubscriptionStatus,
)
from clubbilling.models import ProviderPayment
from clubbilling.services.mandate_resolution import resolve_usable_mandate
from clubbilling.services.mandate_sync import MISSING
from clubbilling.services.state_machine import WEBHOOK, Actor

OPERATOR = Actor(ActorType.user, 7)


def test_pending_mandate_becomes_active(factory, db, provider, sink):
    tier = factory.tier()
    mandate = factory.mandate(status=MandateStatus.pending)
    sub = factory.subscription(tier)
    provider.mandate_statuses[mandate.provider_mandate_id] = MandateStatus.active

    result = factory.services().mandates.run()
    assert (result.processed, result.failed) == (1, 0)
    assert result.metadata["mandates_changed"] == 1

    db.expire_all()
    assert mandate.status == MandateStatus.active
    assert mandate.provider_status == MandateStatus.active
    assert mandate.provider_checked_at is not None
    assert "mandate_active" in sink.types
    # Activation is left to the billing sweep.
    assert sub.status == SubscriptionStatus.pending


def test_cancelled_mandate_suspends_and_reinstatement_reactivates(factory, db, provider, sink):
    tier = factory.tier()
    mandate = factory.mandate()
    sub = factory.subscription(tier)
    other = factory.subscription(factory.tier(name="Junior"), beneficiary_user_id=201)
    services = factory.services()

    provider.mandate_statuses[mandate.provider_mandate_id] = MandateStatus.cancelled
    services.mandates.run()
    db.expire_all()
    for subscription in (sub, other):
        assert subscription.status == SubscriptionStatus.suspended
        assert subscription.suspension_reason == "mandate_cancelled"
    assert sink.types.count("membership_suspended") == 2

    # A second run sees no change and does nothing.
    assert "mandates_changed" not in services.mandates.run().metadata

    assert services.mandates.apply_mandate_status(mandate, MandateStatus.active, actor=WEBHOOK)
    db.commit()
    db.expire_all()
    assert sub.status == SubscriptionStatus.active
    assert other.status == SubscriptionStatus.active


def test_dunning_suspension_survives_mandate_reinstatement(factory, db):
    tier = factory.tier()
    mandate = factory.mandate()
    sub = factory.subscription(tier)
    services = factory.services()
    services.machine.suspend(sub.id, "payment_failure_exhausted")
    mandate.status = MandateStatus.failed
    db.add(mandate)
    db.commit()

    services.mandates.apply_mandate_status(mandate, MandateStatus.active)
    db.commit()
    db.expire_all()
    assert sub.status == SubscriptionStatus.suspended


def test_provider_error_is_counted_and_sweep_continues(factory, db, provider):
    broken = factory.mandate(payer_user_id=100)
    healthy = factory.mandate(payer_user_id=101, status=MandateStatus.pending)
    del provider.mandate_statuses[broken.provider_mandate_id]
    provider.mandate_statuses[healthy.provider_mandate_id] = MandateStatus.active

    result = factory.services().mandates.run()
    assert (result.processed, result.successful, result.failed) == (2, 1, 1)
    assert "Mandate not found" in result.errors[0]
    db.expire_all()
    assert healthy.status == MandateStatus.active
    assert broken.status == MandateStatus.active


def test_payment_status_is_polled(factory, clock, db, provider):
    tier = factory.tier()
    factory.mandate()
    sub = factory.subscription(tier)
    services = factory.services()
    clock.today = date(2025, 2, 28)
    services.billing.run_sweep()

    provider.payment_statuses["PM0001"] = ProviderPaymentStatus.confirmed
    result = services.mandates.run()
    assert result.metadata["payments_polled"] == 1

    db.expire_all()
    payment = db.exec(select(ProviderPayment).where(ProviderPayment.subscription_id == sub.id)).one()
    assert payment.status == ProviderPaymentStatus.confirmed
    events = [e.event_type for e in services.machine.list_events(sub.id)]
    assert SubscriptionEventType.payment_succeeded in events


def test_missing_provider_subscription_is_recorded(factory, db, provider):
    tier = factory.tier()
    factory.mandate()
    sub = factory.subscription(tier, provider_subscription_id="SB123")
    services = factory.services()

    result = services.mandates.run()
    assert result.metadata["provider_subscriptions_checked"] == 1
    db.expire_all()
    assert sub.provider_subscription_status == MISSING

    entry = services.diagnostics.diagnose(sub)
    assert entry.needs_sync
    assert any("was not found at the provider" in b for b in entry.sync_blockers)
    assert any("has no local payment history" in b for b in entry.sync_blockers)

    provider.subscription_statuses["SB123"] = "active"
    services.mandates.run()
    db.expire_all()
    assert sub.provider_subscription_status == "active"


def test_diagnostics_report(factory, db):
    tier = factory.tier()

    # Payer 100: no mandate at all.
    no_mandate = factory.subscription(tier, payer_user_id=100, beneficiary_user_id=200)
    # Payer 101: a mandate, but not default and not linked.
    factory.mandate(payer_user_id=101, is_default=False)
    unlinked = factory.subscription(tier, payer_user_id=101, beneficiary_user_id=201)
    # Payer 102: default mandate still pending.
    factory.mandate(payer_user_id=102, status=MandateStatus.pending)
    waiting = factory.subscription(tier, payer_user_id=102, beneficiary_user_id=202)
    # Payer 103: healthy locally, provider disagrees.
    drifted_mandate = factory.mandate(payer_user_id=103)
    drifted = factory.subscription(tier, payer_user_id=103, beneficiary_user_id=203)
    drifted_mandate.provider_status = MandateStatus.cancelled
    db.add(drifted_mandate)
    db.commit()
    # Another club is left out of a club-scoped report.
    other_tier = factory.tier(club_id=2)
    factory.subscription(other_tier, payer_user_id=104, beneficiary_user_id=204)

    report = factory.services().diagnostics.report(club_id=1)
    assert report.summary.total == 4
    assert report.summary.blocked == 3
    assert report.summary.needs_sync == 1

    blockers = {e.subscription_id: e.sync_blockers for e in report.blocked_subscriptions}
    assert blockers[no_mandate.id] == ["No mandate set up for payer 100"]
    assert "none is marked default" in blockers[unlinked.id][0]
    assert "is pending, not active" in blockers[waiting.id][0]
    assert drifted.id not in blockers
    assert [e.subscription_id for e in report.subscriptions_needing_sync] == [drifted.id]

    everything = factory.services().diagnostics.report()
    assert everything.summary.total == 5


def test_sync_subscription_links_only_mandate_and_activates(factory, db, provider):
    tier = factory.tier()
    mandate = factory.mandate(is_default=False, status=MandateStatus.pending)
    sub = factory.subscription(tier)
    assert sub.status == SubscriptionStatus.pending
    provider.mandate_statuses[mandate.provider_mandate_id] = MandateStatus.active

    services = factory.services()
    services.mandates.sync_subscription(sub.id, actor=OPERATOR, club_id=1)
    db.commit()
    db.expire_all()

    assert sub.mandate_id == mandate.id
    assert sub.status == SubscriptionStatus.active
    assert mandate.status == MandateStatus.active
    events = [e.event_type for e in services.machine.list_events(sub.id)]
    assert events[-2:] == [SubscriptionEventType.mandate_linked, SubscriptionEventType.activated]


def test_new_default_mandate_does_not_strand_active_subscription(factory, clock, db, provider):
    tier = factory.tier()
    old = factory.mandate()
    sub = factory.subscription(tier)
    services = factory.services()

    new = services.mandates.register_mandate(
        club_id=1,
        payer_user_id=100,
        provider_mandate_id="MDNEW1",
        make_default=True,
        actor=OPERATOR,
    )
    db.expire_all()
    assert new.is_default is True
    assert new.status == MandateStatus.pending
    assert old.is_default is False
    assert sub.status == SubscriptionStatus.active
    assert sub.mandate_id == old.id
    assert resolve_usable_mandate(db, sub).id == old.id
    [linked] = [
        e
        for e in services.machine.list_events(sub.id)
        if e.event_type == SubscriptionEventType.mandate_linked
    ]
    assert linked.details["reason"] == "default_changed"

    # Still billed against the old mandate while the new one is pending.
    clock.today = date(2025, 2, 28)
    services.billing.run_sweep()
    assert provider.submissions[0]["mandate"] == old.provider_mandate_id

    # Once the new default is active the subscription follows it again.
    services.mandates.apply_mandate_status(new, MandateStatus.active, actor=WEBHOOK)
    db.commit()
    db.expire_all()
    assert sub.mandate_id is None
    assert resolve_usable_mandate(db, sub).id == new.id

    services.mandates.apply_mandate_status(old, MandateStatus.cancelled, actor=WEBHOOK)
    db.commit()
    db.expire_all()
    assert sub.status == SubscriptionStatus.active


def test_default_switch_to_unusable_mandate_pins_dependents(factory, db):
    tier = factory.tier()
    old = factory.mandate()
    sub = factory.subscription(tier)
    paused = factory.subscription(factory.tier(name="Junior"), beneficiary_user_id=201)
    services = factory.services()
    services.machine.pause(paused.id, actor=OPERATOR)
    db.commit()
    cancelled = factory.mandate(status=MandateStatus.cancelled, is_default=False)

    services.mandates.set_default_mandate(cancelled.id, club_id=1, actor=OPERATOR)
    db.expire_all()
    assert cancelled.is_default is True
    for subscription in (sub, paused):
        assert subscription.mandate_id == old.id
    assert sub.status == SubscriptionStatus.active
    assert resolve_usable_mandate(db, sub).id == old.id


def test_default_switch_to_active_mandate_moves_dependents(factory, db):
    tier = factory.tier()
    factory.mandate()
    sub = factory.subscription(tier)
    other = factory.mandate(is_default=False)

    factory.services().mandates.set_default_mandate(other.id, club_id=1, actor=OPERATOR)
    db.expire_all()
    assert sub.mandate_id is None
    assert resolve_usable_mandate(db, sub).id == other.id
