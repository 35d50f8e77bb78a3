"""
Mandate synchronizer

Pulls the provider's view of mandates, in-flight payments and provider-side
subscriptions into the local mirror columns. Mandate changes go through
``apply_mandate_status`` (also used by the webhook route) and payment
changes through the payment ingestor, so polling and webhooks behave the
same.
"""
from __future__ import annotations

import logging

from sqlmodel import Session, col, select

from clubbilling.api.errors import Conflict, MandateNotReady, ValidationFailed
from clubbilling.crud import mandates as mandate_crud
from clubbilling.enums import (
    IN_FLIGHT_STATUSES,
    MandateStatus,
    NotificationType,
    SubscriptionEventType,
    SubscriptionStatus,
)
from clubbilling.integrations.gocardless import PaymentProvider, ProviderError
from clubbilling.models import (
    PaymentMandate,
    ProviderPayment,
    Subscription,
    SubscriptionEvent,
    utc_now,
)
from clubbilling.services import notifications
from clubbilling.services.mandate_resolution import (
    is_usable,
    resolve_mandate,
    subscriptions_resolving_to,
)
from clubbilling.services.payment_events import PaymentEventIngestor, PaymentStatusChange
from clubbilling.services.state_machine import SYSTEM, Actor, SubscriptionStateMachine
from clubbilling.services.worker_result import WorkerResult

logger = logging.getLogger(__name__)

# Recorded as provider_subscription_status when the provider returns 404.
MISSING = "missing"


def suspension_reason_for(status: MandateStatus) -> str:
    return f"mandate_{status.value}"


class MandateSynchronizer:
    def __init__(
        self,
        session: Session,
        *,
        provider: PaymentProvider,
        machine: SubscriptionStateMachine,
        payments: PaymentEventIngestor,
    ) -> None:
        self.session = session
        self.provider = provider
        self.machine = machine
        self.payments = payments

    def run(self) -> WorkerResult:
        result = WorkerResult()
        self._sync_mandates(result)
        self._sync_payments(result)
        self._sync_provider_subscriptions(result)
        return result

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    def _sync_mandates(self, result: WorkerResult) -> None:
        statement = select(PaymentMandate.id).where(
            col(PaymentMandate.status).in_([MandateStatus.pending.value, MandateStatus.active.value])
        )
        for mandate_id in self.session.exec(statement).all():
            try:
                mandate = self.session.get(PaymentMandate, mandate_id, with_for_update=True)
                changed = self.refresh_mandate(mandate)
                self.session.commit()
            except ProviderError as exc:
                self.session.rollback()
                logger.warning("Mandate %s not synced: %s", mandate_id, exc)
                result.fail(f"mandate {mandate_id}", exc)
                continue
            except Exception as exc:
                self.session.rollback()
                logger.exception("Mandate %s sync failed", mandate_id)
                result.fail(f"mandate {mandate_id}", exc)
                continue
            result.ok()
            if changed:
                result.bump("mandates_changed")

    def _sync_payments(self, result: WorkerResult) -> None:
        statement = select(ProviderPayment.id, ProviderPayment.provider_payment_id).where(
            col(ProviderPayment.provider_payment_id).is_not(None),
            col(ProviderPayment.status).in_([s.value for s in IN_FLIGHT_STATUSES]),
        )
        for payment_id, provider_payment_id in self.session.exec(statement).all():
            try:
                status = self.provider.get_payment_status(provider_payment_id)
                self.payments.apply(
                    PaymentStatusChange(
                        status=status, source="poll", provider_payment_id=provider_payment_id
                    )
                )
                self.session.commit()
            except ProviderError as exc:
                self.session.rollback()
                logger.warning("Payment %s not synced: %s", payment_id, exc)
                result.fail(f"payment {payment_id}", exc)
                continue
            except Exception as exc:
                self.session.rollback()
                logger.exception("Payment %s sync failed", payment_id)
                result.fail(f"payment {payment_id}", exc)
                continue
            result.ok()
            result.bump("payments_polled")

    def _sync_provider_subscriptions(self, result: WorkerResult) -> None:
        statement = select(Subscription.id).where(
            col(Subscription.provider_subscription_id).is_not(None),
            col(Subscription.status).in_(
                [SubscriptionStatus.pending.value, SubscriptionStatus.active.value]
            ),
        )
        for subscription_id in self.session.exec(statement).all():
            try:
                subscription = self.session.get(Subscription, subscription_id)
                self.refresh_provider_subscription(subscription)
                self.session.commit()
            except ProviderError as exc:
                self.session.rollback()
                logger.warning("Provider subscription of %s not synced: %s", subscription_id, exc)
                result.fail(f"subscription {subscription_id}", exc)
                continue
            except Exception as exc:
                self.session.rollback()
                logger.exception("Provider subscription of %s sync failed", subscription_id)
                result.fail(f"subscription {subscription_id}", exc)
                continue
            result.ok()
            result.bump("provider_subscriptions_checked")

    # ------------------------------------------------------------------
    # Single-record operations
    # ------------------------------------------------------------------

    def refresh_mandate(self, mandate: PaymentMandate, *, actor: Actor = SYSTEM) -> bool:
        remote = self.provider.get_mandate_status(mandate.provider_mandate_id)
        mandate.provider_status = remote
        mandate.provider_checked_at = utc_now()
        self.session.add(mandate)
        return self.apply_mandate_status(mandate, remote, actor=actor)

    def refresh_provider_subscription(self, subscription: Subscription) -> str:
        status = self.provider.get_subscription_status(subscription.provider_subscription_id)
        subscription.provider_subscription_status = status or MISSING
        subscription.provider_checked_at = utc_now()
        self.session.add(subscription)
        self.session.flush()
        return subscription.provider_subscription_status

    def apply_mandate_status(
        self, mandate: PaymentMandate, status: MandateStatus, *, actor: Actor = SYSTEM
    ) -> bool:
        """
        Move a mandate to ``status`` and settle the subscriptions that bill
        against it. Returns False when nothing changed.

        - becoming active: notify, hand back to the default any subscriptions
          pinned elsewhere while it was pending, and bring back subscriptions
          suspended only because the mandate had lapsed (pending
          subscriptions are activated by the next billing sweep)
        - leaving active: suspend the active subscriptions resolving to it
        """
        previous = MandateStatus(mandate.status)
        status = MandateStatus(status)
        if previous == status:
            return False

        mandate.status = status
        mandate.updated_at = utc_now()
        self.session.add(mandate)
        self.session.flush()
        logger.info("Mandate %s moved %s -> %s", mandate.id, previous.value, status.value)

        if status == MandateStatus.active:
            notifications.enqueue(
                self.session,
                notifications.LifecycleEvent(
                    event_type=NotificationType.mandate_active,
                    club_id=mandate.club_id,
                    payer_user_id=mandate.payer_user_id,
                    payload={
                        "mandate_id": mandate.id,
                        "provider_mandate_id": mandate.provider_mandate_id,
                        "scheme": mandate.scheme,
                    },
                ),
            )
            if mandate.is_default:
                self._release_default_pins(mandate, actor)
            for subscription in subscriptions_resolving_to(
                self.session, mandate, (SubscriptionStatus.suspended,)
            ):
                if (subscription.suspension_reason or "").startswith("mandate_"):
                    self.machine.reactivate(subscription.id, actor=actor)
        elif previous == MandateStatus.active:
            for subscription in subscriptions_resolving_to(
                self.session, mandate, (SubscriptionStatus.active,)
            ):
                self.machine.suspend(subscription.id, suspension_reason_for(status), actor=actor)
        return True

    # ------------------------------------------------------------------
    # Default mandate
    # ------------------------------------------------------------------

    def register_mandate(
        self,
        *,
        club_id: int,
        payer_user_id: int,
        provider_mandate_id: str,
        actor: Actor,
        provider_customer_id: str | None = None,
        scheme: str | None = None,
        make_default: bool | None = None,
    ) -> PaymentMandate:
        """
        Record a new (pending) mandate, optionally as the payer's default.

        Subscriptions billing through an active default are pinned to it
        before the default moves, so they keep a usable mandate until the
        new one is active. Commits.
        """
        if not provider_mandate_id:
            raise ValidationFailed("provider_mandate_id is required")
        if mandate_crud.get_by_provider_id(
            session=self.session, provider_mandate_id=provider_mandate_id
        ):
            raise Conflict(f"Mandate {provider_mandate_id} is already registered")
        current = mandate_crud.get_default(
            session=self.session, club_id=club_id, payer_user_id=payer_user_id
        )
        if make_default is None:
            make_default = current is None
        if make_default and is_usable(current):
            self._pin_default_dependents(current, actor)
        return mandate_crud.register(
            session=self.session,
            club_id=club_id,
            payer_user_id=payer_user_id,
            provider_mandate_id=provider_mandate_id,
            provider_customer_id=provider_customer_id,
            scheme=scheme,
            make_default=make_default,
        )

    def set_default_mandate(self, mandate_id: int, *, club_id: int, actor: Actor) -> PaymentMandate:
        """Switch the payer's default, pinning dependents when the target cannot bill yet. Commits."""
        mandate = mandate_crud.get_for_club(
            session=self.session, club_id=club_id, mandate_id=mandate_id
        )
        if mandate.is_default:
            return mandate
        if is_usable(mandate):
            self._release_default_pins(mandate, actor)
        else:
            current = mandate_crud.get_default(
                session=self.session, club_id=club_id, payer_user_id=mandate.payer_user_id
            )
            if is_usable(current):
                self._pin_default_dependents(current, actor)
        return mandate_crud.set_default(session=self.session, club_id=club_id, mandate_id=mandate_id)

    def _pin_default_dependents(self, default: PaymentMandate, actor: Actor) -> None:
        open_statuses = tuple(s for s in SubscriptionStatus if s != SubscriptionStatus.cancelled)
        for subscription in subscriptions_resolving_to(self.session, default, open_statuses):
            if subscription.mandate_id is not None:
                continue
            subscription.mandate_id = default.id
            subscription.updated_at = utc_now()
            self.session.add(subscription)
            self.session.flush()
            self.machine.record_event(
                subscription,
                SubscriptionEventType.mandate_linked,
                actor=actor,
                previous_status=subscription.status,
                new_status=subscription.status,
                details={
                    "mandate_id": default.id,
                    "provider_mandate_id": default.provider_mandate_id,
                    "reason": "default_changed",
                },
            )
            logger.info(
                "Subscription %s pinned to mandate %s before default change",
                subscription.id,
                default.id,
            )

    def _release_default_pins(self, mandate: PaymentMandate, actor: Actor) -> None:
        """Undo pins made by ``_pin_default_dependents`` once ``mandate`` can bill."""
        statement = select(Subscription).where(
            Subscription.club_id == mandate.club_id,
            Subscription.payer_user_id == mandate.payer_user_id,
            col(Subscription.mandate_id).is_not(None),
            Subscription.mandate_id != mandate.id,
            Subscription.status != SubscriptionStatus.cancelled,
        )
        for subscription in self.session.exec(statement).all():
            linked = self.session.exec(
                select(SubscriptionEvent)
                .where(SubscriptionEvent.subscription_id == subscription.id)
                .where(SubscriptionEvent.event_type == SubscriptionEventType.mandate_linked)
                .order_by(col(SubscriptionEvent.id).desc())
                .limit(1)
            ).first()
            details = (linked.details or {}) if linked else {}
            if (
                details.get("reason") != "default_changed"
                or details.get("mandate_id") != subscription.mandate_id
            ):
                continue
            subscription.mandate_id = None
            subscription.updated_at = utc_now()
            self.session.add(subscription)
            self.session.flush()
            self.machine.record_event(
                subscription,
                SubscriptionEventType.mandate_linked,
                actor=actor,
                previous_status=subscription.status,
                new_status=subscription.status,
                details={
                    "mandate_id": mandate.id,
                    "provider_mandate_id": mandate.provider_mandate_id,
                    "reason": "default_active",
                },
            )

    def sync_subscription(
        self, subscription_id: int, *, actor: Actor, club_id: int | None = None
    ) -> Subscription:
        """
        Operator correction for one subscription.

        Links the payer's default mandate (or their only usable one) when the
        subscription references none, refreshes the mandate and the
        provider-side subscription, then activates the subscription if it was
        waiting on its mandate. The caller commits.
        """
        subscription = self.machine.get(subscription_id, club_id=club_id, for_update=True)

        if subscription.mandate_id is None:
            candidates = [
                m
                for m in mandate_crud.list_for_payer(
                    session=self.session,
                    club_id=subscription.club_id,
                    payer_user_id=subscription.payer_user_id,
                )
                if m.status in (MandateStatus.active, MandateStatus.pending)
            ]
            default = next((m for m in candidates if m.is_default), None)
            if default is None and len(candidates) == 1:
                default = candidates[0]
            if default is not None:
                subscription.mandate_id = default.id
                subscription.updated_at = utc_now()
                self.session.add(subscription)
                self.session.flush()
                self.machine.record_event(
                    subscription,
                    SubscriptionEventType.mandate_linked,
                    actor=actor,
                    previous_status=subscription.status,
                    new_status=subscription.status,
                    details={
                        "mandate_id": default.id,
                        "provider_mandate_id": default.provider_mandate_id,
                    },
                )

        mandate = resolve_mandate(self.session, subscription)
        if mandate is not None:
            self.refresh_mandate(mandate, actor=actor)
        if subscription.provider_subscription_id:
            self.refresh_provider_subscription(subscription)

        if subscription.status == SubscriptionStatus.pending and is_usable(
            resolve_mandate(self.session, subscription)
        ):
            try:
                self.machine.activate(subscription.id, actor=actor)
            except MandateNotReady:
                logger.info("Subscription %s still has no usable mandate", subscription.id)
        return subscription
