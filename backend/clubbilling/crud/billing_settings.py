"""Club billing settings CRUD"""
from decimal import Decimal
from typing import Any

from sqlmodel import Session, select

from clubbilling.api.errors import ValidationFailed
from clubbilling.enums import ServiceChargeType
from clubbilling.models import ClubBillingSettings, utc_now


def get(*, session: Session, club_id: int) -> ClubBillingSettings | None:
    statement = select(ClubBillingSettings).where(ClubBillingSettings.club_id == club_id)
    return session.exec(statement).first()


def upsert(
    *,
    session: Session,
    club_id: int,
    service_charge_enabled: bool,
    service_charge_type: ServiceChargeType,
    service_charge_value: Decimal,
    auto_invoice_enabled: bool,
    default_invoice_items: list[dict[str, Any]] | None,
    invoice_due_days: int,
) -> ClubBillingSettings:
    if service_charge_value < 0:
        raise ValidationFailed("service_charge_value must not be negative")
    if service_charge_type == ServiceChargeType.percentage and service_charge_value > 100:
        raise ValidationFailed("A percentage service charge cannot exceed 100")
    if invoice_due_days < 0:
        raise ValidationFailed("invoice_due_days must not be negative")

    row = get(session=session, club_id=club_id) or ClubBillingSettings(club_id=club_id)
    row.service_charge_enabled = service_charge_enabled
    row.service_charge_type = service_charge_type
    row.service_charge_value = service_charge_value
    row.auto_invoice_enabled = auto_invoice_enabled
    row.default_invoice_items = default_invoice_items
    row.invoice_due_days = invoice_due_days
    row.updated_at = utc_now()
    session.add(row)
    session.commit()
    session.refresh(row)
    return row
