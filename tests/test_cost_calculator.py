from decimal import Decimal
from types import SimpleNamespace

import pytest

from core.exceptions import ValidationError
from services.cost_calculator import calculate, calculate_for_route, normalize_weekdays, to_money


def test_three_days_a_week_with_route_discount():
    """Mon/Wed/Fri at 250: round(4.33 * 3) = 13 days, 13 * 250 - 250 = 3000."""
    breakdown = calculate("250.00", [0, 2, 4], discount_amount="250.00")
    assert breakdown.days_per_week == 3
    assert breakdown.estimated_days_per_month == 13
    assert breakdown.monthly_cost == Decimal("3000.00")
    assert breakdown.to_dict()["monthly_cost"] == "3000.00"


def test_every_weekday():
    # 4.33 * 5 = 21.65 -> 22
    breakdown = calculate(100, [0, 1, 2, 3, 4])
    assert breakdown.estimated_days_per_month == 22
    assert breakdown.monthly_cost == Decimal("2200.00")


def test_discount_never_makes_price_negative():
    breakdown = calculate(10, [6], discount_amount=1000)
    assert breakdown.monthly_cost == Decimal("0.00")


def test_duplicate_weekdays_collapse():
    assert normalize_weekdays([4, 0, 4, 2]) == [0, 2, 4]
    assert calculate(250, [0, 0, 0]).days_per_week == 1


@pytest.mark.parametrize("weekdays", [[], [7], [-1], ["1"], [True]])
def test_invalid_weekday_selection(weekdays):
    with pytest.raises(ValidationError):
        calculate(250, weekdays)


def test_negative_price_or_discount_rejected():
    with pytest.raises(ValidationError):
        calculate(-1, [0])
    with pytest.raises(ValidationError):
        calculate(1, [0], discount_amount=-1)


def test_route_pricing_uses_route_fields():
    route = SimpleNamespace(price_per_seat=Decimal("180.00"), discount_amount=None)
    assert calculate_for_route(route, [1, 3]).monthly_cost == Decimal("1620.00")


def test_money_rounding_is_half_up():
    assert to_money("2.675") == Decimal("2.68")
    assert to_money(0.1) == Decimal("0.10")
