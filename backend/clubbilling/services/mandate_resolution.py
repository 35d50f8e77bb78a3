"""
Mandate resolution

Shared by billing, the state machine and diagnostics so all three agree on
which mandate a subscription would be charged against:

1. the subscription's own ``mandate_id``
2. else the payer's default mandate in the same club
3. else nothing, and the subscription cannot bill
"""
from __future__ import annotations

from sqlmodel import Session, col, select

from clubbilling.crud import mandates as mandate_crud
from clubbilling.enums import MandateStatus, SubscriptionStatus
from clubbilling.models import PaymentMandate, Subscription


def resolve_mandate(session: Session, subscription: Subscription) -> PaymentMandate | None:
    if subscription.mandate_id is not None:
        return session.get(PaymentMandate, subscription.mandate_id)
    return mandate_crud.get_default(
        session=session,
        club_id=subscription.club_id,
        payer_user_id=subscription.payer_user_id,
    )


def is_usable(mandate: PaymentMandate | None) -> bool:
    return mandate is not None and mandate.status == MandateStatus.active


def resolve_usable_mandate(session: Session, subscription: Subscription) -> PaymentMandate | None:
    mandate = resolve_mandate(session, subscription)
    return mandate if is_usable(mandate) else None


def subscriptions_resolving_to(
    session: Session,
    mandate: PaymentMandate,
    statuses: tuple[SubscriptionStatus, ...],
) -> list[Subscription]:
    """Subscriptions that reference the mandate directly or through the payer default."""
    direct = select(Subscription).where(
        Subscription.mandate_id == mandate.id,
        col(Subscription.status).in_([s.value for s in statuses]),
    )
    found = {s.id: s for s in session.exec(direct).all()}
    if mandate.is_default:
        via_default = select(Subscription).where(
            Subscription.club_id == mandate.club_id,
            Subscription.payer_user_id == mandate.payer_user_id,
            col(Subscription.mandate_id).is_(None),
            col(Subscription.status).in_([s.value for s in statuses]),
        )
        for sub in session.exec(via_default).all():
            found.setdefault(sub.id, sub)
    return sorted(found.values(), key=lambda s: s.id)
