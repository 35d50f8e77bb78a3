"""
Billing cycle engine

Daily sweep over subscriptions, plus the collection submission path shared
with tier-change adjustments and dunning retries.

Each due subscription is handled in its own transaction, under a row lock:

1. a scheduled cancellation whose period ended is finalized instead of billed
2. no usable mandate: skipped and reported, the period does not advance
3. credit balance is netted against the amount first
4. a ``pending_submission`` payment row (idempotency key
   ``sub-{id}-{period_start}``) is inserted and the period advanced in the
   same commit
5. the payment is then submitted to the provider

Payment rows are inserted with ``next_retry_at`` = today and it is cleared
only on acknowledgement. If the process dies between 4 and 5, submission
raises, or the provider is unreachable, the row stays ``pending_submission``
and the dunning sweep resubmits it under the same key. A rerun of the sweep
on the same day finds nothing due, so a period is never charged twice.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import date, timedelta
from decimal import Decimal

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from clubbilling.api.errors import MandateNotReady
from clubbilling.core.snowflake import generate_id
from clubbilling.enums import (
    SUCCESS_STATUSES,
    TERMINAL_FAILURE_STATUSES,
    BillingFrequency,
    PaymentPurpose,
    ProviderPaymentStatus,
    SubscriptionEventType,
    SubscriptionStatus,
)
from clubbilling.integrations.gocardless import (
    PaymentProvider,
    ProviderRequestError,
    ProviderTransientError,
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
from clubbilling.services.billing_calendar import add_period
from clubbilling.services.mandate_resolution import is_usable, resolve_usable_mandate
from clubbilling.services.money import ZERO, round_money
from clubbilling.services.payment_events import PaymentEventIngestor, PaymentStatusChange
from clubbilling.services.state_machine import SYSTEM, SubscriptionStateMachine
from clubbilling.services.worker_result import WorkerResult

logger = logging.getLogger(__name__)

# submit_payment outcomes
SUBMITTED = "submitted"
DEFERRED = "deferred"
REJECTED = "rejected"

# billing outcomes
CHARGED = "charged"
CREDIT_COVERED = "credit_covered"
BLOCKED = "blocked"
FINALIZED = "finalized"
SKIPPED = "skipped"


def recurring_idempotency_key(subscription_id: int, period_start: date) -> str:
    return f"sub-{subscription_id}-{period_start.isoformat()}"


class BillingCycleEngine:
    def __init__(
        self,
        session: Session,
        *,
        machine: SubscriptionStateMachine,
        provider: PaymentProvider,
        payments: PaymentEventIngestor,
        today: Callable[[], date] = utc_today,
    ) -> None:
        self.session = session
        self.machine = machine
        self.provider = provider
        self.payments = payments
        self.today = today

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    def run_sweep(self) -> WorkerResult:
        result = WorkerResult()
        today = self.today()
        self._resume_due(today, result)
        self._activate_ready(result)

        for subscription_id in self._due_ids(today):
            try:
                outcome = self.bill_subscription(subscription_id)
            except Exception as exc:
                self.session.rollback()
                logger.exception("Billing failed for subscription %s", subscription_id)
                result.fail(subscription_id, exc)
                continue
            result.bump(outcome)
            if outcome == BLOCKED:
                result.metadata.setdefault("blocked_subscription_ids", []).append(subscription_id)
                result.skip()
            elif outcome == SKIPPED:
                result.skip()
            else:
                result.ok()
        logger.info(
            "Billing sweep for %s: %d processed, %d failed",
            today,
            result.processed,
            result.failed,
        )
        return result

    def bill_subscription(self, subscription_id: int) -> str:
        """Bill one due subscription. Commits its own transaction."""
        subscription = self.machine.get(subscription_id, for_update=True)
        today = self.today()
        if (
            subscription.status != SubscriptionStatus.active
            or subscription.next_billing_date is None
            or subscription.next_billing_date > today
        ):
            # Another sweep got here first.
            self.session.commit()
            return SKIPPED

        if subscription.cancel_at_period_end:
            self.machine.finalize_cancellation(subscription.id, actor=SYSTEM)
            self.session.commit()
            return FINALIZED

        mandate = resolve_usable_mandate(self.session, subscription)
        if mandate is None:
            logger.warning(
                "Subscription %s is due but no active mandate resolves; not advancing",
                subscription.id,
            )
            self._record_blocked(subscription)
            self.session.commit()
            return BLOCKED

        period_start = subscription.next_billing_date
        amount = Decimal(subscription.amount)
        credit = min(Decimal(subscription.credit_balance or ZERO), amount)
        charge = round_money(amount - credit)
        subscription.credit_balance = round_money(Decimal(subscription.credit_balance or ZERO) - credit)

        payment: ProviderPayment | None = None
        if charge > ZERO:
            payment = ProviderPayment(
                subscription_id=subscription.id,
                mandate_id=mandate.id,
                purpose=PaymentPurpose.recurring,
                idempotency_key=recurring_idempotency_key(subscription.id, period_start),
                amount=charge,
                currency=subscription.currency,
                description=self._describe(subscription, period_start),
                status=ProviderPaymentStatus.pending_submission,
                period_start=period_start,
                next_retry_at=today,
            )
            self.session.add(payment)

        period_end = add_period(
            period_start,
            BillingFrequency(subscription.billing_frequency),
            subscription.billing_day_of_month,
        )
        subscription.current_period_start = period_start
        subscription.current_period_end = period_end
        subscription.next_billing_date = period_end
        subscription.updated_at = utc_now()
        self.session.add(subscription)
        try:
            self.session.flush()
        except IntegrityError:
            # The period already has a payment row: it was billed before.
            self.session.rollback()
            logger.warning(
                "Subscription %s period %s already billed", subscription_id, period_start
            )
            return SKIPPED

        self.machine.record_event(
            subscription,
            SubscriptionEventType.billing_cycle_advanced,
            actor=SYSTEM,
            previous_status=subscription.status,
            new_status=subscription.status,
            details={
                "period_start": period_start.isoformat(),
                "period_end": period_end.isoformat(),
                "amount": str(amount),
                "credit_applied": str(credit),
                "charged": str(charge),
                "payment_id": payment.id if payment else None,
            },
        )
        self.session.commit()

        if payment is None:
            return CREDIT_COVERED
        self.submit_payment(payment)
        return CHARGED

    def _due_ids(self, today: date) -> list[int]:
        statement = (
            select(Subscription.id)
            .where(Subscription.status == SubscriptionStatus.active)
            .where(col(Subscription.next_billing_date).is_not(None))
            .where(col(Subscription.next_billing_date) <= today)
            .order_by(col(Subscription.next_billing_date), col(Subscription.id))
        )
        return list(self.session.exec(statement).all())

    def _resume_due(self, today: date, result: WorkerResult) -> None:
        statement = (
            select(Subscription.id)
            .where(Subscription.status == SubscriptionStatus.paused)
            .where(col(Subscription.resume_date).is_not(None))
            .where(col(Subscription.resume_date) <= today)
        )
        for subscription_id in self.session.exec(statement).all():
            try:
                self.machine.resume(subscription_id, actor=SYSTEM)
                self.session.commit()
            except MandateNotReady:
                self.session.rollback()
                result.bump("resume_blocked")
                continue
            except Exception as exc:
                self.session.rollback()
                logger.exception("Auto-resume failed for subscription %s", subscription_id)
                result.fail(subscription_id, exc)
                continue
            result.bump("resumed")

    def _activate_ready(self, result: WorkerResult) -> None:
        """Activate pending subscriptions whose mandate has become usable."""
        statement = select(Subscription).where(Subscription.status == SubscriptionStatus.pending)
        ready = [
            s.id
            for s in self.session.exec(statement).all()
            if resolve_usable_mandate(self.session, s) is not None
        ]
        for subscription_id in ready:
            try:
                self.machine.activate(subscription_id, actor=SYSTEM)
                self.session.commit()
            except Exception as exc:
                self.session.rollback()
                logger.exception("Activation failed for subscription %s", subscription_id)
                result.fail(subscription_id, exc)
                continue
            result.bump("activated")

    def _record_blocked(self, subscription: Subscription) -> None:
        """One ``billing_blocked`` event per missed billing date, not one per sweep."""
        due = subscription.next_billing_date.isoformat()
        latest = self.session.exec(
            select(SubscriptionEvent)
            .where(SubscriptionEvent.subscription_id == subscription.id)
            .order_by(col(SubscriptionEvent.id).desc())
            .limit(1)
        ).first()
        if (
            latest is not None
            and latest.event_type == SubscriptionEventType.billing_blocked
            and (latest.details or {}).get("next_billing_date") == due
        ):
            return
        self.machine.record_event(
            subscription,
            SubscriptionEventType.billing_blocked,
            actor=SYSTEM,
            previous_status=subscription.status,
            new_status=subscription.status,
            description="No active mandate resolves for this subscription",
            details={"next_billing_date": due, "mandate_id": subscription.mandate_id},
        )

    def _describe(self, subscription: Subscription, period_start: date) -> str:
        tier = self.session.get(MembershipTier, subscription.tier_id)
        name = tier.name if tier else "Membership"
        return f"{name} {period_start:%b %Y}"

    # ------------------------------------------------------------------
    # One-off collections
    # ------------------------------------------------------------------

    def collect_adjustment(
        self, subscription: Subscription, amount: Decimal, description: str
    ) -> ProviderPayment:
        """
        Queue a one-off charge (tier upgrade) in the caller's transaction.
        Submit it with ``submit_pending`` once the caller has committed.
        """
        mandate = resolve_usable_mandate(self.session, subscription)
        if mandate is None:
            raise MandateNotReady(
                f"Subscription {subscription.id} has no active mandate to collect the adjustment"
            )
        payment = ProviderPayment(
            subscription_id=subscription.id,
            mandate_id=mandate.id,
            purpose=PaymentPurpose.proration,
            idempotency_key=f"sub-{subscription.id}-adj-{generate_id()}",
            amount=round_money(amount),
            currency=subscription.currency,
            description=description,
            status=ProviderPaymentStatus.pending_submission,
            period_start=subscription.current_period_start,
            next_retry_at=self.today(),
        )
        self.session.add(payment)
        self.session.flush()
        return payment

    def retry_collection(self, failed: ProviderPayment) -> ProviderPayment | None:
        """
        New attempt for a failed payment, against whichever mandate resolves
        now. Returns None (and keeps the retry scheduled) when none does.
        """
        subscription = self.session.get(Subscription, failed.subscription_id)
        mandate = resolve_usable_mandate(self.session, subscription) if subscription else None
        if mandate is None:
            logger.warning("Retry of payment %s blocked: no active mandate", failed.id)
            return None
        attempt = failed.retry_count + 1
        retry = ProviderPayment(
            subscription_id=failed.subscription_id,
            mandate_id=mandate.id,
            purpose=failed.purpose,
            idempotency_key=f"{failed.idempotency_key}-retry-{attempt}",
            amount=failed.amount,
            currency=failed.currency,
            description=failed.description,
            status=ProviderPaymentStatus.pending_submission,
            period_start=failed.period_start,
            retry_count=attempt,
            retry_of_id=failed.id,
            next_retry_at=self.today(),
        )
        failed.next_retry_at = None
        failed.updated_at = utc_now()
        self.session.add(failed)
        self.session.add(retry)
        self.session.flush()
        return retry

    def submit_pending(self, payments: list[ProviderPayment]) -> list[str]:
        return [self.submit_payment(payment) for payment in payments]

    def submit_payment(self, payment: ProviderPayment) -> str:
        """
        Send a committed ``pending_submission`` row to the provider and
        commit the acknowledgement.

        - transient error: row kept, ``next_retry_at`` = today, not a failure
        - mandate or bank account rejected: routed to dunning as a failure
        - any other rejection (auth, permissions, payload): logged as an
          error, row kept for resubmission, the payer is not penalised
        """
        if payment.status != ProviderPaymentStatus.pending_submission:
            return SUBMITTED
        today = self.today()
        mandate = self.session.get(PaymentMandate, payment.mandate_id) if payment.mandate_id else None
        if not is_usable(mandate):
            payment.next_retry_at = today + timedelta(days=1)
            payment.failure_reason = "mandate not active"
            payment.updated_at = utc_now()
            self.session.add(payment)
            self.session.commit()
            return DEFERRED

        try:
            ack = self.provider.submit_collection(
                mandate.provider_mandate_id,
                Decimal(payment.amount),
                payment.currency,
                payment.description or "Membership",
                idempotency_key=payment.idempotency_key,
            )
        except ProviderTransientError as exc:
            logger.warning("Payment %s not submitted, will resubmit: %s", payment.id, exc)
            payment.next_retry_at = today
            payment.failure_reason = str(exc)
            payment.updated_at = utc_now()
            self.session.add(payment)
            self.session.commit()
            return DEFERRED
        except ProviderRequestError as exc:
            if not exc.is_payer_rejection:
                logger.error(
                    "Payment %s refused by provider (HTTP %s, %s): %s",
                    payment.id,
                    exc.status_code,
                    exc.reason or exc.error_type,
                    exc,
                )
                payment.next_retry_at = today + timedelta(days=1)
                payment.failure_reason = str(exc)
                payment.updated_at = utc_now()
                self.session.add(payment)
                self.session.commit()
                return DEFERRED
            logger.warning("Payment %s rejected by provider: %s", payment.id, exc)
            self.payments.apply(
                PaymentStatusChange(
                    status=ProviderPaymentStatus.failed,
                    source="submission",
                    payment_id=payment.id,
                    reason=str(exc),
                )
            )
            self.session.commit()
            return REJECTED

        payment.provider_payment_id = ack.provider_payment_id
        payment.charge_date = ack.charge_date
        payment.submitted_at = utc_now()
        payment.next_retry_at = None
        payment.failure_reason = None
        payment.updated_at = utc_now()
        status = ProviderPaymentStatus(ack.status)
        if status in SUCCESS_STATUSES or status in TERMINAL_FAILURE_STATUSES:
            payment.status = ProviderPaymentStatus.submitted
            self.session.add(payment)
            self.session.flush()
            self.payments.apply(
                PaymentStatusChange(status=status, source="submission", payment_id=payment.id)
            )
        else:
            payment.status = status
            self.session.add(payment)
        self.session.commit()
        logger.info("Payment %s submitted as %s", payment.id, ack.provider_payment_id)
        return SUBMITTED
