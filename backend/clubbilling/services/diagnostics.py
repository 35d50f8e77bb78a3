"""
Subscription diagnostics

Read-only report on every pending/active subscription: which mandate it
would bill against, whether the local mirror has drifted from the provider
(``needs_sync``) and what stops it from billing (``sync_blockers``). A
subscription is blocked iff it has at least one blocker. Nothing here
writes; operators act on the report through the sync endpoint.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field
from sqlmodel import Session, col, select

from clubbilling.crud import mandates as mandate_crud
from clubbilling.enums import MandateStatus, SubscriptionStatus
from clubbilling.models import PaymentMandate, ProviderPayment, Subscription, utc_now
from clubbilling.services.mandate_sync import MISSING
from clubbilling.services.mandate_resolution import resolve_mandate

REPORTED_STATUSES = (SubscriptionStatus.pending, SubscriptionStatus.active)


class DiagnosticEntry(BaseModel):
    subscription_id: int
    club_id: int
    payer_user_id: int
    beneficiary_user_id: int
    tier_id: int
    amount: Decimal
    billing_frequency: str
    subscription_status: str
    direct_mandate_id: int | None = None
    direct_mandate_status: str | None = None
    resolved_mandate_id: int | None = None
    resolved_mandate_status: str | None = None
    resolved_provider_mandate_id: str | None = None
    provider_mandate_status: str | None = None
    provider_subscription_id: str | None = None
    provider_subscription_status: str | None = None
    needs_sync: bool = False
    sync_blockers: list[str] = Field(default_factory=list)

    @property
    def blocked(self) -> bool:
        return bool(self.sync_blockers)


class DiagnosticSummary(BaseModel):
    total: int
    needs_sync: int
    blocked: int


class DiagnosticReport(BaseModel):
    generated_at: datetime
    summary: DiagnosticSummary
    subscriptions_needing_sync: list[DiagnosticEntry]
    blocked_subscriptions: list[DiagnosticEntry]


class DiagnosticsService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def report(self, *, club_id: int | None = None) -> DiagnosticReport:
        statement = select(Subscription).where(
            col(Subscription.status).in_([s.value for s in REPORTED_STATUSES])
        )
        if club_id is not None:
            statement = statement.where(Subscription.club_id == club_id)
        statement = statement.order_by(col(Subscription.id))

        entries = [self.diagnose(s) for s in self.session.exec(statement).all()]
        needing_sync = [e for e in entries if e.needs_sync]
        blocked = [e for e in entries if e.blocked]
        return DiagnosticReport(
            generated_at=utc_now(),
            summary=DiagnosticSummary(
                total=len(entries), needs_sync=len(needing_sync), blocked=len(blocked)
            ),
            subscriptions_needing_sync=needing_sync,
            blocked_subscriptions=blocked,
        )

    def diagnose(self, subscription: Subscription) -> DiagnosticEntry:
        direct = (
            self.session.get(PaymentMandate, subscription.mandate_id)
            if subscription.mandate_id is not None
            else None
        )
        resolved = resolve_mandate(self.session, subscription)
        entry = DiagnosticEntry(
            subscription_id=subscription.id,
            club_id=subscription.club_id,
            payer_user_id=subscription.payer_user_id,
            beneficiary_user_id=subscription.beneficiary_user_id,
            tier_id=subscription.tier_id,
            amount=subscription.amount,
            billing_frequency=_value(subscription.billing_frequency),
            subscription_status=_value(subscription.status),
            direct_mandate_id=direct.id if direct else None,
            direct_mandate_status=_value(direct.status) if direct else None,
            resolved_mandate_id=resolved.id if resolved else None,
            resolved_mandate_status=_value(resolved.status) if resolved else None,
            resolved_provider_mandate_id=resolved.provider_mandate_id if resolved else None,
            provider_mandate_status=_value(resolved.provider_status) if resolved else None,
            provider_subscription_id=subscription.provider_subscription_id,
            provider_subscription_status=subscription.provider_subscription_status,
        )

        if subscription.mandate_id is not None and direct is None:
            entry.sync_blockers.append(
                f"Mandate {subscription.mandate_id} referenced by the subscription does not exist"
            )
        elif resolved is None:
            payer_mandates = mandate_crud.list_for_payer(
                session=self.session,
                club_id=subscription.club_id,
                payer_user_id=subscription.payer_user_id,
            )
            if payer_mandates:
                entry.sync_blockers.append(
                    f"Payer {subscription.payer_user_id} has {len(payer_mandates)} mandate(s) but "
                    "none is linked to the subscription and none is marked default"
                )
            else:
                entry.sync_blockers.append(
                    f"No mandate set up for payer {subscription.payer_user_id}"
                )
        elif resolved.status != MandateStatus.active:
            entry.sync_blockers.append(
                f"Mandate {resolved.provider_mandate_id} is {_value(resolved.status)}, not active"
            )

        if (
            resolved is not None
            and resolved.provider_status is not None
            and resolved.provider_status != resolved.status
        ):
            entry.needs_sync = True

        if subscription.provider_subscription_id:
            if subscription.provider_subscription_status == MISSING:
                entry.sync_blockers.append(
                    f"Provider subscription {subscription.provider_subscription_id} "
                    "was not found at the provider"
                )
            has_history = self.session.exec(
                select(ProviderPayment.id)
                .where(ProviderPayment.subscription_id == subscription.id)
                .limit(1)
            ).first()
            if has_history is None:
                entry.needs_sync = True
                entry.sync_blockers.append(
                    f"Provider subscription {subscription.provider_subscription_id} "
                    "has no local payment history"
                )
        return entry


def _value(value: object) -> str | None:
    if value is None:
        return None
    return getattr(value, "value", str(value))
