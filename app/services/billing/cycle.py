"""Billing-day calendar arithmetic.

Billing days are clamped to 1-28 when a subscription is created, so every
month has a matching date. Rows written before that rule (or imported) may
hold 29-31; for those the billing date falls back to the month's last day.
"""

from __future__ import annotations

from calendar import monthrange
from datetime import UTC, datetime

MIN_BILLING_DAY = 1
MAX_BILLING_DAY = 28


def billing_day_for(created_at: datetime) -> int:
    return min(max(created_at.day, MIN_BILLING_DAY), MAX_BILLING_DAY)


def _shift_month(year: int, month: int, months: int) -> tuple[int, int]:
    total = month - 1 + months
    return year + total // 12, total % 12 + 1


def effective_day(year: int, month: int, billing_day: int) -> int:
    return min(max(billing_day, MIN_BILLING_DAY), monthrange(year, month)[1])


def billing_date(year: int, month: int, billing_day: int) -> datetime:
    return datetime(year, month, effective_day(year, month, billing_day), tzinfo=UTC)


def is_billing_day(billing_day: int, now: datetime) -> bool:
    return now.day == effective_day(now.year, now.month, billing_day)


def next_billing_date(billing_day: int, now: datetime) -> datetime:
    """This month's billing date if it is still ahead, else next month's."""
    if now.day < effective_day(now.year, now.month, billing_day):
        return billing_date(now.year, now.month, billing_day)
    year, month = _shift_month(now.year, now.month, 1)
    return billing_date(year, month, billing_day)


def billing_period(billing_day: int, now: datetime) -> tuple[datetime, datetime]:
    """The ``[start, end)`` cycle containing ``now``."""
    if now.day >= effective_day(now.year, now.month, billing_day):
        start = billing_date(now.year, now.month, billing_day)
        year, month = _shift_month(now.year, now.month, 1)
        return start, billing_date(year, month, billing_day)
    year, month = _shift_month(now.year, now.month, -1)
    return billing_date(year, month, billing_day), billing_date(now.year, now.month, billing_day)


def start_of_day(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def upcoming_billing_date(billing_day: int, now: datetime) -> datetime:
    """Like ``next_billing_date`` but today's billing date counts as upcoming."""
    if now.day <= effective_day(now.year, now.month, billing_day):
        return billing_date(now.year, now.month, billing_day)
    return next_billing_date(billing_day, now)
