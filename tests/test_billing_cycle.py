from datetime import UTC, datetime

import pytest

from app.services.billing import cycle


@pytest.mark.parametrize(
    ("day", "expected"),
    [(1, 1), (15, 15), (28, 28), (29, 28), (31, 28)],
)
def test_billing_day_is_clamped(day, expected):
    created = datetime(2026, 1, day, tzinfo=UTC)
    assert cycle.billing_day_for(created) == expected


def test_is_billing_day():
    assert cycle.is_billing_day(10, datetime(2026, 3, 10, 23, 59, tzinfo=UTC))
    assert not cycle.is_billing_day(10, datetime(2026, 3, 11, tzinfo=UTC))


def test_legacy_day_falls_back_to_month_end():
    assert cycle.is_billing_day(31, datetime(2026, 2, 28, tzinfo=UTC))
    assert cycle.billing_date(2026, 4, 31) == datetime(2026, 4, 30, tzinfo=UTC)


def test_next_billing_date_is_strictly_after_today():
    on_day = datetime(2026, 3, 10, 8, 0, tzinfo=UTC)
    assert cycle.next_billing_date(10, on_day) == datetime(2026, 4, 10, tzinfo=UTC)
    before = datetime(2026, 3, 9, tzinfo=UTC)
    assert cycle.next_billing_date(10, before) == datetime(2026, 3, 10, tzinfo=UTC)


def test_next_billing_date_rolls_over_year():
    assert cycle.next_billing_date(5, datetime(2026, 12, 20, tzinfo=UTC)) == datetime(
        2027, 1, 5, tzinfo=UTC
    )


def test_upcoming_billing_date_includes_today():
    on_day = datetime(2026, 3, 10, 8, 0, tzinfo=UTC)
    assert cycle.upcoming_billing_date(10, on_day) == datetime(2026, 3, 10, tzinfo=UTC)
    after = datetime(2026, 3, 11, tzinfo=UTC)
    assert cycle.upcoming_billing_date(10, after) == datetime(2026, 4, 10, tzinfo=UTC)


def test_billing_period_from_billing_day_onwards():
    start, end = cycle.billing_period(10, datetime(2026, 3, 15, tzinfo=UTC))
    assert start == datetime(2026, 3, 10, tzinfo=UTC)
    assert end == datetime(2026, 4, 10, tzinfo=UTC)


def test_billing_period_before_billing_day():
    start, end = cycle.billing_period(10, datetime(2026, 1, 4, tzinfo=UTC))
    assert start == datetime(2025, 12, 10, tzinfo=UTC)
    assert end == datetime(2026, 1, 10, tzinfo=UTC)
