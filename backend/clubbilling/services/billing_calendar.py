"""
Billing calendar

Periods are anchored on ``billing_day_of_month``. When the target month is
shorter than the configured day the date clamps to the month's last day,
and because each step recomputes from the configured day rather than from
the previous (clamped) date, the clamp never carries forward:

    day 31: Jan 31 -> Feb 28 -> Mar 31 -> Apr 30 -> May 31
"""
from __future__ import annotations

import calendar
from datetime import date

from clubbilling.api.errors import ValidationFailed
from clubbilling.enums import BillingFrequency

_MONTHS = {BillingFrequency.monthly: 1, BillingFrequency.annual: 12}


def validate_billing_day(day: int) -> int:
    if not isinstance(day, int) or isinstance(day, bool) or not 1 <= day <= 31:
        raise ValidationFailed(f"billing_day_of_month must be between 1 and 31, got {day!r}")
    return day


def on_billing_day(year: int, month: int, billing_day: int) -> date:
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(billing_day, last_day))


def add_period(anchor: date, frequency: BillingFrequency | str, billing_day: int) -> date:
    """
    Return the billing date one frequency unit after ``anchor``.

    Args:
        anchor: start of the period (usually the previous period end)
        frequency: monthly or annual
        billing_day: configured day of month, 1..31

    Returns:
        ``billing_day`` in the month one (or twelve) months after ``anchor``,
        clamped to that month's length
    """
    months = _MONTHS[BillingFrequency(frequency)]
    index = anchor.month - 1 + months
    year = anchor.year + index // 12
    month = index % 12 + 1
    return on_billing_day(year, month, billing_day)
