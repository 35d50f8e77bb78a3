"""
Proration calculator

Pure function, no I/O. For a tier change effective ``today`` inside the
period ``[period_start, period_end)``:

    adjustment = (new_amount - old_amount) * days_remaining / total_days

Days are whole calendar days. The result is rounded once, at the end, to
the smallest currency unit, half away from zero. A positive adjustment is
owed by the payer; a negative one is credit owed to the payer.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from clubbilling.services.money import ZERO, round_money


@dataclass(frozen=True)
class ProrationResult:
    adjustment: Decimal
    days_remaining: int
    total_days: int

    @property
    def is_charge(self) -> bool:
        return self.adjustment > 0

    @property
    def is_credit(self) -> bool:
        return self.adjustment < 0


def calculate_proration(
    old_amount: Decimal,
    new_amount: Decimal,
    period_start: date,
    period_end: date,
    today: date,
) -> ProrationResult:
    total_days = (period_end - period_start).days
    if total_days <= 0:
        return ProrationResult(adjustment=ZERO, days_remaining=0, total_days=max(total_days, 0))

    days_remaining = min(max((period_end - today).days, 0), total_days)
    delta = Decimal(new_amount) - Decimal(old_amount)
    adjustment = round_money(delta * days_remaining / total_days)
    # Normalise -0.00 so callers can compare against ZERO safely.
    if adjustment == 0:
        adjustment = ZERO
    return ProrationResult(
        adjustment=adjustment, days_remaining=days_remaining, total_days=total_days
    )
