"""
Subscription state machine

The only component allowed to change ``Subscription.status``. Billing,
dunning and the mandate synchronizer call into it instead of writing
subscriptions directly, so every transition is checked against the graph
below and leaves a ``SubscriptionEvent`` behind.

    pending   -> active, cancelled
    active    -> paused, suspended, cancelled
    paused    -> active, cancelled
    suspended -> active, cancelled
    cancelled -> (terminal)

Methods flush but never commit; the caller owns the transaction so a
transition and the billing work that goes with it commit together.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from clubbilling.api.errors import (
    InvalidTransition,
    MandateNotReady,
    SubscriptionExists,
    ValidationFailed,
    not_found,
)
from clubbilling.enums import (
    ActorType,
    BillingFrequency,
    NotificationType,
    SubscriptionEventType,
    SubscriptionStatus,
)
from clubbilling.models import (
    MembershipTier,
    PaymentMandate,
    ProviderPayment,
    Subscription,
    SubscriptionEvent,
    utc_now,
    utc_today,
)
from clubbilling.services import notifications
from clubbilling.services.billing_calendar import add_period, validate_billing_day
from clubbilling.services.mandate_resolution import resolve_usable_mandate
from clubbilling.services.money import ZERO
from clubbilling.services.proration import ProrationResult, calculate_proration

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    SubscriptionStatus.pending: frozenset({SubscriptionStatus.active, SubscriptionStatus.cancelled}),
    SubscriptionStatus.active: frozenset(
        {SubscriptionStatus.paused, SubscriptionStatus.suspended, SubscriptionStatus.cancelled}
    ),
    SubscriptionStatus.paused: frozenset({SubscriptionStatus.active, SubscriptionStatus.cancelled}),
    SubscriptionStatus.suspended: frozenset(
        {SubscriptionStatus.active, SubscriptionStatus.cancelled}
    ),
    SubscriptionStatus.cancelled: frozenset(),
}

AdjustmentSink = Callable[[Subscription, Decimal, str], "ProviderPayment | None"]


@dataclass(frozen=True)
class Actor:
    """Who asked for a change; stored on every audit event."""
    type: ActorType
    id: int | None = None


SYSTEM = Actor(ActorType.system)
WEBHOOK = Actor(ActorType.webhook)


@dataclass
class TierChangeResult:
    subscription: Subscription
    proration: ProrationResult | None = None
    adjustment_payment: ProviderPayment | None = None
    credit_added: Decimal = ZERO


def price_for(tier: MembershipTier, frequency: BillingFrequency) -> Decimal:
    if frequency == BillingFrequency.annual:
        if tier.annual_price is None:
            raise ValidationFailed(f"Tier {tier.id} has no annual price")
        return Decimal(tier.annual_price)
    return Decimal(tier.monthly_price)


class SubscriptionStateMachine:
    def __init__(
        self,
        session: Session,
        *,
        today: Callable[[], date] = utc_today,
        adjustment_sink: AdjustmentSink | None = None,
    ) -> None:
        self.session = session
        self.today = today
        # Wired to BillingCycleEngine.collect_adjustment by the container.
        self.adjustment_sink = adjustment_sink

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(
        self, subscription_id: int, *, club_id: int | None = None, for_update: bool = False
    ) -> Subscription:
        subscription = self.session.get(
            Subscription, subscription_id, with_for_update=True if for_update else None
        )
        if not subscription or (club_id is not None and subscription.club_id != club_id):
            raise not_found("Subscription", subscription_id)
        return subscription

    def list_events(self, subscription_id: int) -> list[SubscriptionEvent]:
        statement = (
            select(SubscriptionEvent)
            .where(SubscriptionEvent.subscription_id == subscription_id)
            .order_by(col(SubscriptionEvent.id))
        )
        return list(self.session.exec(statement).all())

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def create(
        self,
        *,
        club_id: int,
        payer_user_id: int,
        beneficiary_user_id: int,
        tier_id: int,
        actor: Actor,
        billing_frequency: BillingFrequency | str | None = None,
        billing_day_of_month: int | None = None,
        mandate_id: int | None = None,
        provider_subscription_id: str | None = None,
    ) -> Subscription:
        """
        Subscribe a member to a tier.

        The subscription starts ``pending`` and is activated straight away
        when a usable mandate already resolves (explicit ``mandate_id`` or the
        payer's default).

        Raises:
            ValidationFailed: unknown/inactive tier, bad frequency or billing
                day, annual billing without an annual price, foreign mandate
            SubscriptionExists: an open subscription for the same member and
                tier already exists in the club
        """
        tier = self._load_tier(club_id, tier_id)
        try:
            frequency = BillingFrequency(billing_frequency or BillingFrequency.monthly)
        except ValueError:
            raise ValidationFailed(f"Unknown billing frequency {billing_frequency!r}")
        day = validate_billing_day(
            billing_day_of_month if billing_day_of_month is not None else self.today().day
        )
        amount = price_for(tier, frequency)

        if mandate_id is not None:
            mandate = self.session.get(PaymentMandate, mandate_id)
            if (
                not mandate
                or mandate.club_id != club_id
                or mandate.payer_user_id != payer_user_id
            ):
                raise ValidationFailed(f"Mandate {mandate_id} does not belong to this payer")

        self._ensure_no_open_subscription(club_id, beneficiary_user_id, tier.id)

        subscription = Subscription(
            club_id=club_id,
            payer_user_id=payer_user_id,
            beneficiary_user_id=beneficiary_user_id,
            tier_id=tier.id,
            mandate_id=mandate_id,
            status=SubscriptionStatus.pending,
            billing_frequency=frequency,
            billing_day_of_month=day,
            amount=amount,
            currency=tier.currency,
            provider_subscription_id=provider_subscription_id,
        )
        # A lost race only unwinds this insert, not the caller's transaction.
        try:
            with self.session.begin_nested():
                self.session.add(subscription)
                self.session.flush()
        except IntegrityError:
            raise SubscriptionExists(
                f"Member {beneficiary_user_id} already has an open subscription to tier {tier.id}"
            )

        self.record_event(
            subscription,
            SubscriptionEventType.created,
            actor=actor,
            new_status=SubscriptionStatus.pending,
            new_tier_id=tier.id,
            description=f"Subscribed to {tier.name}",
            details={"amount": str(amount), "billing_frequency": frequency.value},
        )
        self._notify(
            subscription,
            NotificationType.subscription_created,
            amount=str(amount),
            tier_id=tier.id,
            billing_frequency=frequency.value,
        )

        if resolve_usable_mandate(self.session, subscription) is not None:
            self._activate(subscription, actor)
        return subscription

    def activate(self, subscription_id: int, *, actor: Actor = SYSTEM) -> Subscription:
        subscription = self.get(subscription_id, for_update=True)
        self._check_transition(
            subscription, SubscriptionStatus.active, allowed_from={SubscriptionStatus.pending}
        )
        return self._activate(subscription, actor)

    def pause(
        self, subscription_id: int, *, actor: Actor, resume_date: date | None = None
    ) -> Subscription:
        subscription = self.get(subscription_id, for_update=True)
        self._check_transition(subscription, SubscriptionStatus.paused)
        today = self.today()
        if resume_date is not None and resume_date <= today:
            raise ValidationFailed("resume_date must be in the future")

        previous = SubscriptionStatus(subscription.status)
        subscription.status = SubscriptionStatus.paused
        subscription.paused_at = utc_now()
        subscription.resume_date = resume_date
        self._touch(subscription)
        self.record_event(
            subscription,
            SubscriptionEventType.paused,
            actor=actor,
            previous_status=previous,
            new_status=SubscriptionStatus.paused,
            details={"resume_date": resume_date.isoformat() if resume_date else None},
        )
        self._notify(
            subscription,
            NotificationType.subscription_paused,
            resume_date=resume_date.isoformat() if resume_date else None,
        )
        return subscription

    def resume(self, subscription_id: int, *, actor: Actor) -> Subscription:
        """
        Resume a paused subscription.

        The new period starts today rather than on the original schedule, so
        the paused interval is never billed.
        """
        subscription = self.get(subscription_id, for_update=True)
        self._check_transition(
            subscription, SubscriptionStatus.active, allowed_from={SubscriptionStatus.paused}
        )
        self._require_mandate(subscription)

        subscription.status = SubscriptionStatus.active
        subscription.paused_at = None
        subscription.resume_date = None
        self._start_period(subscription, self.today())
        self._touch(subscription)
        self.record_event(
            subscription,
            SubscriptionEventType.resumed,
            actor=actor,
            previous_status=SubscriptionStatus.paused,
            new_status=SubscriptionStatus.active,
            details={"next_billing_date": subscription.next_billing_date.isoformat()},
        )
        self._notify(
            subscription,
            NotificationType.subscription_resumed,
            next_billing_date=subscription.next_billing_date.isoformat(),
        )
        return subscription

    def change_tier(
        self,
        subscription_id: int,
        new_tier_id: int,
        *,
        actor: Actor,
        prorate: bool = True,
    ) -> TierChangeResult:
        """
        Move a subscription to another tier, effective immediately.

        ``amount`` takes the new tier's current price; the period dates are
        untouched. With ``prorate`` on an active subscription the remaining
        part of the period is settled now: a positive adjustment is collected
        as a one-off payment, a negative one is kept as credit for the next
        recurring charge.
        """
        subscription = self.get(subscription_id, for_update=True)
        if subscription.status not in (SubscriptionStatus.active, SubscriptionStatus.paused):
            raise InvalidTransition(
                f"Cannot change tier of a {SubscriptionStatus(subscription.status).value} subscription"
            )
        if new_tier_id == subscription.tier_id:
            raise ValidationFailed("Subscription is already on this tier")
        tier = self._load_tier(subscription.club_id, new_tier_id)
        self._ensure_no_open_subscription(
            subscription.club_id, subscription.beneficiary_user_id, tier.id
        )

        frequency = BillingFrequency(subscription.billing_frequency)
        old_amount = Decimal(subscription.amount)
        new_amount = price_for(tier, frequency)
        previous_tier_id = subscription.tier_id

        result = TierChangeResult(subscription=subscription)
        if (
            prorate
            and subscription.status == SubscriptionStatus.active
            and subscription.current_period_start is not None
            and subscription.current_period_end is not None
        ):
            result.proration = calculate_proration(
                old_amount,
                new_amount,
                subscription.current_period_start,
                subscription.current_period_end,
                self.today(),
            )

        subscription.tier_id = tier.id
        subscription.amount = new_amount
        self._touch(subscription)

        proration = result.proration
        if proration is not None and proration.is_credit:
            result.credit_added = -proration.adjustment
            subscription.credit_balance = Decimal(subscription.credit_balance) + result.credit_added

        self.record_event(
            subscription,
            SubscriptionEventType.tier_changed,
            actor=actor,
            previous_status=subscription.status,
            new_status=subscription.status,
            previous_tier_id=previous_tier_id,
            new_tier_id=tier.id,
            description=f"Changed to {tier.name}",
            details={
                "old_amount": str(old_amount),
                "new_amount": str(new_amount),
                "adjustment": str(proration.adjustment) if proration else None,
                "days_remaining": proration.days_remaining if proration else None,
            },
        )

        if proration is not None and proration.is_charge:
            if self.adjustment_sink is None:
                raise RuntimeError("No adjustment collector configured for tier changes")
            result.adjustment_payment = self.adjustment_sink(
                subscription,
                proration.adjustment,
                f"Tier change adjustment ({proration.days_remaining}/{proration.total_days} days)",
            )

        self._notify(
            subscription,
            NotificationType.subscription_tier_changed,
            previous_tier_id=previous_tier_id,
            new_tier_id=tier.id,
            old_amount=str(old_amount),
            new_amount=str(new_amount),
            adjustment=str(proration.adjustment) if proration else "0.00",
        )
        return result

    def cancel(
        self,
        subscription_id: int,
        *,
        actor: Actor,
        reason: str | None = None,
        immediate: bool = False,
    ) -> Subscription:
        """
        Cancel a subscription.

        Deferred cancellation (the default) only applies to an active
        subscription: it keeps billing until ``current_period_end`` and the
        billing sweep finalizes it. Anything else cancels immediately.
        """
        subscription = self.get(subscription_id, for_update=True)
        self._check_transition(subscription, SubscriptionStatus.cancelled)

        if not immediate and subscription.status == SubscriptionStatus.active:
            if subscription.cancel_at_period_end:
                raise InvalidTransition("Cancellation is already scheduled")
            subscription.cancel_at_period_end = True
            subscription.cancelled_at = utc_now()
            subscription.cancellation_reason = reason
            self._touch(subscription)
            effective = subscription.current_period_end
            self.record_event(
                subscription,
                SubscriptionEventType.cancellation_scheduled,
                actor=actor,
                previous_status=SubscriptionStatus.active,
                new_status=SubscriptionStatus.active,
                description=reason,
                details={"effective_date": effective.isoformat() if effective else None},
            )
            self._notify(
                subscription,
                NotificationType.subscription_cancelled,
                immediate=False,
                effective_date=effective.isoformat() if effective else None,
                reason=reason,
            )
            return subscription

        return self._finalize_cancel(subscription, actor, reason)

    def finalize_cancellation(self, subscription_id: int, *, actor: Actor = SYSTEM) -> Subscription:
        subscription = self.get(subscription_id, for_update=True)
        if not subscription.cancel_at_period_end:
            raise InvalidTransition("No cancellation is scheduled")
        self._check_transition(subscription, SubscriptionStatus.cancelled)
        return self._finalize_cancel(subscription, actor, subscription.cancellation_reason)

    def suspend(self, subscription_id: int, reason: str, *, actor: Actor = SYSTEM) -> Subscription:
        subscription = self.get(subscription_id, for_update=True)
        self._check_transition(
            subscription, SubscriptionStatus.suspended, allowed_from={SubscriptionStatus.active}
        )
        subscription.status = SubscriptionStatus.suspended
        subscription.suspended_at = utc_now()
        subscription.suspension_reason = reason
        self._touch(subscription)
        self.record_event(
            subscription,
            SubscriptionEventType.suspended,
            actor=actor,
            previous_status=SubscriptionStatus.active,
            new_status=SubscriptionStatus.suspended,
            description=reason,
            details={"failed_payment_count": subscription.failed_payment_count},
        )
        self._notify(
            subscription,
            NotificationType.membership_suspended,
            reason=reason,
            failed_payment_count=subscription.failed_payment_count,
        )
        return subscription

    def reactivate(self, subscription_id: int, *, actor: Actor) -> Subscription:
        """
        Bring a suspended subscription back to ``active``.

        The open period is kept unless its billing date already passed while
        suspended, in which case a fresh period starts today.
        """
        subscription = self.get(subscription_id, for_update=True)
        self._check_transition(
            subscription, SubscriptionStatus.active, allowed_from={SubscriptionStatus.suspended}
        )
        self._require_mandate(subscription)

        today = self.today()
        if subscription.next_billing_date is None or subscription.next_billing_date < today:
            self._start_period(subscription, today)
        previous_reason = subscription.suspension_reason
        subscription.status = SubscriptionStatus.active
        subscription.suspended_at = None
        subscription.suspension_reason = None
        self._touch(subscription)
        self.record_event(
            subscription,
            SubscriptionEventType.reactivated,
            actor=actor,
            previous_status=SubscriptionStatus.suspended,
            new_status=SubscriptionStatus.active,
            details={"previous_suspension_reason": previous_reason},
        )
        return subscription

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------

    def record_event(
        self,
        subscription: Subscription,
        event_type: SubscriptionEventType,
        *,
        actor: Actor,
        previous_status: SubscriptionStatus | str | None = None,
        new_status: SubscriptionStatus | str | None = None,
        previous_tier_id: int | None = None,
        new_tier_id: int | None = None,
        description: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> SubscriptionEvent:
        row = SubscriptionEvent(
            subscription_id=subscription.id,
            event_type=event_type,
            previous_status=_status_value(previous_status),
            new_status=_status_value(new_status),
            previous_tier_id=previous_tier_id,
            new_tier_id=new_tier_id,
            actor_type=actor.type,
            actor_id=actor.id,
            description=description,
            details=details,
        )
        self.session.add(row)
        self.session.flush()
        return row

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _activate(self, subscription: Subscription, actor: Actor) -> Subscription:
        self._require_mandate(subscription)
        subscription.status = SubscriptionStatus.active
        self._start_period(subscription, self.today())
        self._touch(subscription)
        self.record_event(
            subscription,
            SubscriptionEventType.activated,
            actor=actor,
            previous_status=SubscriptionStatus.pending,
            new_status=SubscriptionStatus.active,
            details={"next_billing_date": subscription.next_billing_date.isoformat()},
        )
        logger.info("Subscription %s activated", subscription.id)
        return subscription

    def _finalize_cancel(
        self, subscription: Subscription, actor: Actor, reason: str | None
    ) -> Subscription:
        previous = SubscriptionStatus(subscription.status)
        subscription.status = SubscriptionStatus.cancelled
        subscription.cancel_at_period_end = False
        subscription.cancelled_at = subscription.cancelled_at or utc_now()
        subscription.cancellation_reason = reason
        self._touch(subscription)
        self.record_event(
            subscription,
            SubscriptionEventType.cancelled,
            actor=actor,
            previous_status=previous,
            new_status=SubscriptionStatus.cancelled,
            description=reason,
        )
        self._notify(
            subscription, NotificationType.subscription_cancelled, immediate=True, reason=reason
        )
        return subscription

    def _start_period(self, subscription: Subscription, start: date) -> None:
        end = add_period(
            start,
            BillingFrequency(subscription.billing_frequency),
            subscription.billing_day_of_month,
        )
        subscription.current_period_start = start
        subscription.current_period_end = end
        subscription.next_billing_date = end

    def _require_mandate(self, subscription: Subscription) -> PaymentMandate:
        mandate = resolve_usable_mandate(self.session, subscription)
        if mandate is None:
            raise MandateNotReady(
                f"Subscription {subscription.id} has no active mandate; set up Direct Debit first"
            )
        return mandate

    def _check_transition(
        self,
        subscription: Subscription,
        target: SubscriptionStatus,
        *,
        allowed_from: set[SubscriptionStatus] | None = None,
    ) -> None:
        current = SubscriptionStatus(subscription.status)
        permitted = target in ALLOWED_TRANSITIONS[current]
        if allowed_from is not None:
            permitted = permitted and current in allowed_from
        if not permitted:
            raise InvalidTransition(f"Cannot move subscription from {current.value} to {target.value}")

    def _load_tier(self, club_id: int, tier_id: int) -> MembershipTier:
        tier = self.session.get(MembershipTier, tier_id)
        if not tier or tier.club_id != club_id or not tier.is_active:
            raise ValidationFailed(f"Unknown or inactive tier {tier_id}")
        return tier

    def _ensure_no_open_subscription(
        self, club_id: int, beneficiary_user_id: int, tier_id: int
    ) -> None:
        statement = select(Subscription.id).where(
            Subscription.club_id == club_id,
            Subscription.beneficiary_user_id == beneficiary_user_id,
            Subscription.tier_id == tier_id,
            Subscription.status != SubscriptionStatus.cancelled,
        )
        if self.session.exec(statement).first() is not None:
            raise SubscriptionExists(
                f"Member {beneficiary_user_id} already has an open subscription to tier {tier_id}"
            )

    def _touch(self, subscription: Subscription) -> None:
        subscription.updated_at = utc_now()
        self.session.add(subscription)
        self.session.flush()

    def _notify(self, subscription: Subscription, event_type: NotificationType, **payload: Any) -> None:
        notifications.enqueue(
            self.session,
            notifications.LifecycleEvent(
                event_type=event_type,
                club_id=subscription.club_id,
                subscription_id=subscription.id,
                payer_user_id=subscription.payer_user_id,
                payload=payload,
            ),
        )


def _status_value(status: SubscriptionStatus | str | None) -> str | None:
    if status is None:
        return None
    return SubscriptionStatus(status).value
