"""
Payment retry / dunning engine

Reacts to collection outcomes for subscription payments:

- failure (``failed`` / ``charged_back``): bump ``failed_payment_count``,
  stamp ``last_failed_payment_date`` and either schedule a retry after the
  configured backoff or, once the count reaches the retry limit, suspend
  the subscription with reason ``payment_failure_exhausted``
- success (``confirmed`` / ``paid_out``): reset the live counter to 0 and
  reactivate a subscription that dunning had suspended

The policy is loaded on every invocation so edits to the dunning record
apply immediately. The engine only talks to the state machine through the
narrow ``SubscriptionTransitions`` interface.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Protocol

from sqlmodel import Session, col, select

from clubbilling.api.errors import MandateNotReady
from clubbilling.enums import (
    NotificationType,
    ProviderPaymentStatus,
    SubscriptionEventType,
    SubscriptionStatus,
)
from clubbilling.models import ProviderPayment, Subscription, SubscriptionEvent, utc_now, utc_today
from clubbilling.services import notifications
from clubbilling.services.config_service import DunningPolicy, load_dunning_policy
from clubbilling.services.state_machine import SYSTEM, Actor
from clubbilling.services.worker_result import WorkerResult

logger = logging.getLogger(__name__)

EXHAUSTED_REASON = "payment_failure_exhausted"


class SubscriptionTransitions(Protocol):
    def suspend(self, subscription_id: int, reason: str, *, actor: Actor = ...) -> Subscription: ...

    def reactivate(self, subscription_id: int, *, actor: Actor) -> Subscription: ...

    def record_event(
        self, subscription: Subscription, event_type: SubscriptionEventType, *, actor: Actor, **kwargs: Any
    ) -> SubscriptionEvent: ...


class CollectionSubmitter(Protocol):
    def retry_collection(self, failed: ProviderPayment) -> ProviderPayment | None: ...

    def submit_payment(self, payment: ProviderPayment) -> str: ...


@dataclass
class DunningOutcome:
    failed_payment_count: int
    retry_on: date | None = None
    suspended: bool = False
    reactivated: bool = False


class DunningEngine:
    def __init__(
        self,
        session: Session,
        *,
        transitions: SubscriptionTransitions,
        policy_loader: Callable[[Session], DunningPolicy] = load_dunning_policy,
        today: Callable[[], date] = utc_today,
    ) -> None:
        self.session = session
        self.transitions = transitions
        self.policy_loader = policy_loader
        self.today = today

    def record_failure(
        self, payment: ProviderPayment, *, reason: str | None = None, actor: Actor = SYSTEM
    ) -> DunningOutcome:
        """
        Account for a provider-confirmed failure of a subscription payment.

        Connectivity problems never reach this method; they stay at the
        submission layer and do not count as failures.
        """
        policy = self.policy_loader(self.session)
        subscription = self._subscription(payment)
        subscription.failed_payment_count = (subscription.failed_payment_count or 0) + 1
        subscription.last_failed_payment_date = utc_now()
        subscription.updated_at = utc_now()
        self.session.add(subscription)
        count = subscription.failed_payment_count
        outcome = DunningOutcome(failed_payment_count=count)

        self.transitions.record_event(
            subscription,
            SubscriptionEventType.payment_failed,
            actor=actor,
            previous_status=subscription.status,
            new_status=subscription.status,
            description=reason,
            details={
                "payment_id": payment.id,
                "provider_payment_id": payment.provider_payment_id,
                "payment_status": ProviderPaymentStatus(payment.status).value,
                "amount": str(payment.amount),
                "attempt": payment.retry_count + 1,
                "failed_payment_count": count,
                "retry_limit": policy.retry_limit,
            },
        )
        notifications.enqueue(
            self.session,
            notifications.LifecycleEvent(
                event_type=NotificationType.payment_failed,
                club_id=subscription.club_id,
                subscription_id=subscription.id,
                payer_user_id=subscription.payer_user_id,
                payload={
                    "payment_id": payment.id,
                    "amount": str(payment.amount),
                    "currency": payment.currency,
                    "reason": reason,
                    "failed_payment_count": count,
                },
            ),
        )

        payment.next_retry_at = None
        payment.updated_at = utc_now()
        self.session.add(payment)
        status = SubscriptionStatus(subscription.status)
        if count >= policy.retry_limit:
            if status == SubscriptionStatus.active:
                self.transitions.suspend(subscription.id, EXHAUSTED_REASON, actor=SYSTEM)
                outcome.suspended = True
                logger.info(
                    "Subscription %s suspended after %d failed payments", subscription.id, count
                )
        elif status in (SubscriptionStatus.active, SubscriptionStatus.paused):
            backoff = policy.backoff_for(count)
            payment.next_retry_at = self.today() + timedelta(days=backoff)
            outcome.retry_on = payment.next_retry_at
            self.transitions.record_event(
                subscription,
                SubscriptionEventType.retry_scheduled,
                actor=SYSTEM,
                details={
                    "payment_id": payment.id,
                    "retry_on": payment.next_retry_at.isoformat(),
                    "backoff_days": backoff,
                },
            )
        self.session.flush()
        return outcome

    def record_success(self, payment: ProviderPayment, *, actor: Actor = SYSTEM) -> DunningOutcome:
        subscription = self._subscription(payment)
        previous_count = subscription.failed_payment_count or 0
        subscription.failed_payment_count = 0
        subscription.updated_at = utc_now()
        self.session.add(subscription)
        outcome = DunningOutcome(failed_payment_count=0)

        self.transitions.record_event(
            subscription,
            SubscriptionEventType.payment_succeeded,
            actor=actor,
            previous_status=subscription.status,
            new_status=subscription.status,
            details={
                "payment_id": payment.id,
                "provider_payment_id": payment.provider_payment_id,
                "amount": str(payment.amount),
                "previous_failed_payment_count": previous_count,
            },
        )
        notifications.enqueue(
            self.session,
            notifications.LifecycleEvent(
                event_type=NotificationType.payment_succeeded,
                club_id=subscription.club_id,
                subscription_id=subscription.id,
                payer_user_id=subscription.payer_user_id,
                payload={
                    "payment_id": payment.id,
                    "amount": str(payment.amount),
                    "currency": payment.currency,
                    "charge_date": payment.charge_date.isoformat() if payment.charge_date else None,
                },
            ),
        )

        if (
            subscription.status == SubscriptionStatus.suspended
            and subscription.suspension_reason == EXHAUSTED_REASON
        ):
            try:
                self.transitions.reactivate(subscription.id, actor=SYSTEM)
                outcome.reactivated = True
            except MandateNotReady:
                logger.warning(
                    "Subscription %s paid but has no active mandate; left suspended",
                    subscription.id,
                )
        self.session.flush()
        return outcome

    def run_retry_sweep(self, collector: CollectionSubmitter) -> WorkerResult:
        """
        Act on payment rows whose ``next_retry_at`` has come:

        1. resubmit ``pending_submission`` rows that were never acknowledged
           (same idempotency key); a deferral is not a failure
        2. create and submit retry collections for failed payments of
           active subscriptions still under the retry limit
        """
        result = WorkerResult()
        today = self.today()

        stranded_ids = self.session.exec(
            select(ProviderPayment.id)
            .where(ProviderPayment.status == ProviderPaymentStatus.pending_submission)
            .where(col(ProviderPayment.next_retry_at).is_not(None))
            .where(col(ProviderPayment.next_retry_at) <= today)
            .order_by(col(ProviderPayment.next_retry_at))
        ).all()
        for payment_id in stranded_ids:
            try:
                payment = self.session.get(ProviderPayment, payment_id)
                outcome = collector.submit_payment(payment)
            except Exception as exc:
                self.session.rollback()
                logger.exception("Resubmission of payment %s failed", payment_id)
                result.fail(payment_id, exc)
                continue
            result.bump(f"resubmit_{outcome}")
            if outcome == "deferred":
                result.skip()
            else:
                result.ok()

        policy = self.policy_loader(self.session)
        due_ids = self.session.exec(
            select(ProviderPayment.id)
            .join(Subscription, col(Subscription.id) == col(ProviderPayment.subscription_id))
            .where(
                col(ProviderPayment.status).in_(
                    [ProviderPaymentStatus.failed.value, ProviderPaymentStatus.charged_back.value]
                )
            )
            .where(col(ProviderPayment.next_retry_at).is_not(None))
            .where(col(ProviderPayment.next_retry_at) <= today)
            .where(Subscription.status == SubscriptionStatus.active)
            .order_by(col(ProviderPayment.next_retry_at))
        ).all()
        for payment_id in due_ids:
            try:
                failed = self.session.get(ProviderPayment, payment_id, with_for_update=True)
                subscription = self._subscription(failed)
                if subscription.failed_payment_count >= policy.retry_limit:
                    failed.next_retry_at = None
                    self.session.add(failed)
                    self.session.commit()
                    result.skip()
                    continue
                retry = collector.retry_collection(failed)
                self.session.commit()
                if retry is None:
                    result.skip()
                    result.bump("retry_blocked")
                    continue
                outcome = collector.submit_payment(retry)
            except Exception as exc:
                self.session.rollback()
                logger.exception("Retry of payment %s failed", payment_id)
                result.fail(payment_id, exc)
                continue
            result.bump(f"retry_{outcome}")
            result.ok()
        return result

    def _subscription(self, payment: ProviderPayment) -> Subscription:
        if payment.subscription_id is None:
            raise ValueError(f"Payment {payment.id} is not linked to a subscription")
        subscription = self.session.get(Subscription, payment.subscription_id, with_for_update=True)
        if subscription is None:
            raise ValueError(f"Subscription {payment.subscription_id} not found")
        return subscription
