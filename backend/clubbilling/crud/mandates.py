"""Payment mandate CRUD"""
from sqlmodel import Session, col, select

from clubbilling.api.errors import Conflict, ValidationFailed, not_found
from clubbilling.enums import MandateStatus
from clubbilling.models import PaymentMandate, utc_now


def get_by_provider_id(*, session: Session, provider_mandate_id: str) -> PaymentMandate | None:
    statement = select(PaymentMandate).where(
        PaymentMandate.provider_mandate_id == provider_mandate_id
    )
    return session.exec(statement).first()


def get_for_club(*, session: Session, club_id: int, mandate_id: int) -> PaymentMandate:
    mandate = session.get(PaymentMandate, mandate_id)
    if not mandate or mandate.club_id != club_id:
        raise not_found("Mandate", mandate_id)
    return mandate


def list_for_payer(*, session: Session, club_id: int, payer_user_id: int) -> list[PaymentMandate]:
    statement = (
        select(PaymentMandate)
        .where(PaymentMandate.club_id == club_id)
        .where(PaymentMandate.payer_user_id == payer_user_id)
        .order_by(col(PaymentMandate.created_at))
    )
    return list(session.exec(statement).all())


def get_default(*, session: Session, club_id: int, payer_user_id: int) -> PaymentMandate | None:
    statement = (
        select(PaymentMandate)
        .where(PaymentMandate.club_id == club_id)
        .where(PaymentMandate.payer_user_id == payer_user_id)
        .where(col(PaymentMandate.is_default).is_(True))
    )
    return session.exec(statement).first()


def register(
    *,
    session: Session,
    club_id: int,
    payer_user_id: int,
    provider_mandate_id: str,
    provider_customer_id: str | None = None,
    scheme: str | None = None,
    make_default: bool | None = None,
) -> PaymentMandate:
    """
    Record a mandate created at the provider (e.g. after the payer completed
    the hosted Direct Debit flow). It starts ``pending`` until the provider
    reports it active. The payer's first mandate becomes the default unless
    ``make_default`` says otherwise. Callers switching the default go through
    ``MandateSynchronizer.register_mandate``.
    """
    if not provider_mandate_id:
        raise ValidationFailed("provider_mandate_id is required")
    if get_by_provider_id(session=session, provider_mandate_id=provider_mandate_id):
        raise Conflict(f"Mandate {provider_mandate_id} is already registered")
    current_default = get_default(session=session, club_id=club_id, payer_user_id=payer_user_id)
    if make_default is None:
        make_default = current_default is None
    if make_default and current_default:
        current_default.is_default = False
        current_default.updated_at = utc_now()
        session.add(current_default)
        session.flush()

    mandate = PaymentMandate(
        club_id=club_id,
        payer_user_id=payer_user_id,
        provider_mandate_id=provider_mandate_id,
        provider_customer_id=provider_customer_id,
        scheme=scheme,
        status=MandateStatus.pending,
        is_default=bool(make_default),
    )
    session.add(mandate)
    session.commit()
    session.refresh(mandate)
    return mandate


def set_default(*, session: Session, club_id: int, mandate_id: int) -> PaymentMandate:
    """Flip the default flag only; ``MandateSynchronizer.set_default_mandate`` settles dependents."""
    mandate = get_for_club(session=session, club_id=club_id, mandate_id=mandate_id)
    if mandate.is_default:
        return mandate
    current_default = get_default(
        session=session, club_id=club_id, payer_user_id=mandate.payer_user_id
    )
    if current_default:
        current_default.is_default = False
        current_default.updated_at = utc_now()
        session.add(current_default)
        # Clear the old default first; the partial unique index allows one.
        session.flush()
    mandate.is_default = True
    mandate.updated_at = utc_now()
    session.add(mandate)
    session.commit()
    session.refresh(mandate)
    return mandate
