from datetime import timedelta
from decimal import Decimal

import pytest

from circulation.fines import (
    FlatDailyRate,
    TieredRate,
    calculate_fine,
    days_late,
    policy_from_settings,
)
from conftest import DAY0


@pytest.mark.parametrize(
    "delta, expected",
    [
        (timedelta(days=-2), 0),
        (timedelta(0), 0),
        (timedelta(seconds=1), 1),
        (timedelta(days=1), 1),
        (timedelta(days=1, hours=3), 2),
        (timedelta(days=6), 6),
    ],
)
def test_days_late(delta, expected):
    assert days_late(DAY0, DAY0 + delta) == expected


def test_flat_daily_rate():
    policy = FlatDailyRate("0.50")
    assert policy(0) == Decimal("0.00")
    assert policy(6) == Decimal("3.00")


def test_flat_daily_rate_rejects_negative_rate():
    with pytest.raises(ValueError):
        FlatDailyRate("-1")


def test_tiered_rate_with_cap():
    policy = TieredRate([(7, "0.25"), (30, "1.00")], cap="10.00")
    assert policy(3) == Decimal("0.75")
    assert policy(9) == Decimal("3.75")
    assert policy(40) == Decimal("10.00")


def test_tiered_rate_keeps_last_rate_past_final_tier():
    policy = TieredRate([(2, "1.00")])
    assert policy(5) == Decimal("5.00")


def test_calculate_fine_uses_cent_rates():
    policy = FlatDailyRate("0.335")
    assert policy.rate == Decimal("0.34")
    assert calculate_fine(DAY0, DAY0 + timedelta(days=3), policy) == Decimal("1.02")


def test_policy_from_settings():
    assert isinstance(policy_from_settings("2.00"), FlatDailyRate)
    tiered = policy_from_settings(tiers="7:0.50, 30:1.00", cap="20")
    assert isinstance(tiered, TieredRate)
    assert tiered(8) == Decimal("4.50")
    with pytest.raises(ValueError):
        policy_from_settings(tiers="7")
