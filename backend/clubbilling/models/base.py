"""
Shared model helpers.
"""
from datetime import date, datetime, timezone

from sqlmodel import SQLModel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_today() -> date:
    """Billing dates are calendar days in UTC."""
    return utc_now().date()


__all__ = ["SQLModel", "utc_now", "utc_today"]
