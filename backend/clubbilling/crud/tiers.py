"""Membership tier CRUD"""
from decimal import Decimal

from sqlmodel import Session, col, select

from clubbilling.api.errors import ValidationFailed, not_found
from clubbilling.core.config import settings
from clubbilling.models import MembershipTier, utc_now


def create(
    *,
    session: Session,
    club_id: int,
    name: str,
    monthly_price: Decimal,
    annual_price: Decimal | None = None,
    currency: str | None = None,
) -> MembershipTier:
    if monthly_price < 0 or (annual_price is not None and annual_price < 0):
        raise ValidationFailed("Tier prices must not be negative")
    tier = MembershipTier(
        club_id=club_id,
        name=name,
        monthly_price=monthly_price,
        annual_price=annual_price,
        currency=currency or settings.DEFAULT_CURRENCY,
    )
    session.add(tier)
    session.commit()
    session.refresh(tier)
    return tier


def get_for_club(*, session: Session, club_id: int, tier_id: int) -> MembershipTier:
    tier = session.get(MembershipTier, tier_id)
    if not tier or tier.club_id != club_id:
        raise not_found("Tier", tier_id)
    return tier


def list_for_club(*, session: Session, club_id: int) -> list[MembershipTier]:
    statement = (
        select(MembershipTier)
        .where(MembershipTier.club_id == club_id)
        .order_by(col(MembershipTier.created_at))
    )
    return list(session.exec(statement).all())


def update(
    *,
    session: Session,
    club_id: int,
    tier_id: int,
    name: str | None = None,
    monthly_price: Decimal | None = None,
    annual_price: Decimal | None = None,
    is_active: bool | None = None,
) -> MembershipTier:
    """Price edits only affect future subscriptions and tier changes."""
    tier = get_for_club(session=session, club_id=club_id, tier_id=tier_id)
    if name is not None:
        tier.name = name
    if monthly_price is not None:
        if monthly_price < 0:
            raise ValidationFailed("Tier prices must not be negative")
        tier.monthly_price = monthly_price
    if annual_price is not None:
        if annual_price < 0:
            raise ValidationFailed("Tier prices must not be negative")
        tier.annual_price = annual_price
    if is_active is not None:
        tier.is_active = is_active
    tier.updated_at = utc_now()
    session.add(tier)
    session.commit()
    session.refresh(tier)
    return tier
