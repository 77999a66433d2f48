"""
Subscription cost calculator.

Pure functions: (price per seat, selected weekdays, route discount) ->
monthly fee. Used at purchase time and by the price preview endpoint, so
both always agree.

Rounding policy:
- estimated_days_per_month = weeks_per_month * days_per_week, rounded half-up to an integer
- money is quantized to 0.01, rounded half-up
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable

from config.settings import settings
from core.exceptions import ValidationError

CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    """Quantize any numeric (int, str, Decimal) to 2 decimal places, half-up."""
    if isinstance(value, float):
        # never let binary floats into the ledger silently
        value = repr(value)
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def normalize_weekdays(weekdays: Iterable[int]) -> list[int]:
    """Validate and de-duplicate a weekday selection (0=Monday .. 6=Sunday)."""
    days = set()
    for day in weekdays or []:
        if isinstance(day, bool) or not isinstance(day, int) or not 0 <= day <= 6:
            raise ValidationError(f"Invalid weekday {day!r}; expected integers 0 (Monday) to 6 (Sunday)")
        days.add(day)
    if not days:
        raise ValidationError("At least one weekday must be selected")
    return sorted(days)


@dataclass(frozen=True)
class CostBreakdown:
    price_per_seat: Decimal
    days_per_week: int
    estimated_days_per_month: int
    discount_amount: Decimal
    monthly_cost: Decimal

    def to_dict(self) -> dict:
        return {
            "price_per_seat": f"{self.price_per_seat:.2f}",
            "days_per_week": self.days_per_week,
            "estimated_days_per_month": self.estimated_days_per_month,
            "discount_amount": f"{self.discount_amount:.2f}",
            "monthly_cost": f"{self.monthly_cost:.2f}",
        }


def calculate(price_per_seat, weekdays: Iterable[int], discount_amount=0, weeks_per_month=None) -> CostBreakdown:
    price = to_money(price_per_seat)
    if price < 0:
        raise ValidationError("price_per_seat must not be negative")
    discount = to_money(discount_amount or 0)
    if discount < 0:
        raise ValidationError("discount_amount must not be negative")

    weeks = Decimal(str(weeks_per_month if weeks_per_month is not None else settings.WEEKS_PER_MONTH))
    days_per_week = len(normalize_weekdays(weekdays))
    estimated_days = int((weeks * days_per_week).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    gross = price * estimated_days
    monthly = max(Decimal("0"), gross - discount)
    return CostBreakdown(
        price_per_seat=price,
        days_per_week=days_per_week,
        estimated_days_per_month=estimated_days,
        discount_amount=discount,
        monthly_cost=to_money(monthly),
    )


def calculate_for_route(route, weekdays: Iterable[int], weeks_per_month=None) -> CostBreakdown:
    """Price a weekday selection on a models.db_models.Route."""
    return calculate(route.price_per_seat, weekdays, route.discount_amount or 0, weeks_per_month)
