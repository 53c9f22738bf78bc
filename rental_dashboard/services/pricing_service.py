from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Iterable


@dataclass(frozen=True)
class OrderTotals:
    duration_days: int
    subtotal_per_day: Decimal
    total_amount: Decimal

    def as_dict(self) -> dict:
        return {
            "durationDays": self.duration_days,
            "subtotalPerDay": self.subtotal_per_day,
            "totalAmount": self.total_amount,
        }


EMPTY_TOTALS = OrderTotals(duration_days=1, subtotal_per_day=Decimal("0"), total_amount=Decimal("0"))


def coerce_date(value: date | datetime | str | None) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raw = str(value).strip()
    if not raw:
        return None
    try:
        return date.fromisoformat(raw[:10])
    except ValueError:
        return None


def to_decimal(value) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return Decimal("0")


def rental_days(start_date: date, end_date: date) -> int:
    """Inclusive day count; a same-day rental is one day."""
    return max(1, (end_date - start_date).days + 1)


def compute_order_total(
    start_date: date | datetime | str | None,
    end_date: date | datetime | str | None,
    items: Iterable[tuple],
) -> OrderTotals:
    """
    Price a rental: (sum of unit_price * quantity) per day, times the inclusive
    day count. ``items`` holds ``(unit_price, quantity)`` pairs.
    """
    start = coerce_date(start_date)
    end = coerce_date(end_date)
    lines = list(items or [])
    if start is None or end is None or not lines:
        return EMPTY_TOTALS

    subtotal = Decimal("0")
    for unit_price, quantity in lines:
        subtotal += to_decimal(unit_price) * int(quantity or 0)

    duration = rental_days(start, end)
    return OrderTotals(duration_days=duration, subtotal_per_day=subtotal, total_amount=subtotal * duration)


def recalc_total_cost(order) -> OrderTotals:
    totals = compute_order_total(
        order.StartDate,
        order.EndDate,
        [(item.UnitPrice, item.Quantity) for item in order.Items],
    )
    order.TotalAmount = totals.total_amount
    return totals
