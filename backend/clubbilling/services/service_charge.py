"""
Service charge

Clubs may add a service charge to generated invoices, either a percentage
of the subtotal or a fixed amount. Uses the same money rounding as
proration.
"""
from __future__ import annotations

from decimal import Decimal

from clubbilling.enums import ServiceChargeType
from clubbilling.models import ClubBillingSettings
from clubbilling.services.money import ZERO, round_money


def calculate_service_charge(
    billing_settings: ClubBillingSettings | None, subtotal: Decimal
) -> Decimal:
    if billing_settings is None or not billing_settings.service_charge_enabled:
        return ZERO
    value = Decimal(billing_settings.service_charge_value or 0)
    if value <= 0 or subtotal <= 0:
        return ZERO
    if billing_settings.service_charge_type == ServiceChargeType.fixed:
        return round_money(value)
    return round_money(Decimal(subtotal) * value / Decimal(100))
