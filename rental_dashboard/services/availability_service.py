from __future__ import annotations

from collections import defaultdict
from datetime import date
from typing import Iterable

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from rental_dashboard.models.rental_models import Order, OrderItem, Product
from rental_dashboard.services.order_state_service import COMMITTING_STATES, status_values


class AvailabilityError(ValueError):
    def __init__(self, message: str, *, product_id: int, requested: int, available: int, committed: int):
        super().__init__(message)
        self.product_id = product_id
        self.requested = requested
        self.available = available
        self.committed = committed


def max_daily_usage(reservations: Iterable[tuple[date, date, int]], start_date: date, end_date: date) -> int:
    """
    Peak number of units held on any single day of ``[start_date, end_date]``.

    ``reservations`` holds ``(start, end, quantity)`` tuples with inclusive
    ranges. Days outside the window are ignored.
    """
    if end_date < start_date:
        return 0
    # Sweep over day ordinals; a range stops counting the day after it ends.
    changes: dict[int, int] = defaultdict(int)
    for res_start, res_end, quantity in reservations:
        first = max(res_start, start_date)
        last = min(res_end, end_date)
        if last < first:
            continue
        changes[first.toordinal()] += int(quantity or 0)
        changes[last.toordinal() + 1] -= int(quantity or 0)

    peak = 0
    running = 0
    for ordinal in sorted(changes):
        running += changes[ordinal]
        peak = max(peak, running)
    return peak


def _committed_reservations(
    db: Session,
    product_id: int,
    start_date: date,
    end_date: date,
    exclude_order_id: int | None = None,
) -> list[tuple[date, date, int]]:
    stmt = (
        select(Order.StartDate, Order.EndDate, OrderItem.Quantity)
        .join(Order, Order.OrderID == OrderItem.OrderID)
        .where(OrderItem.ProductID == product_id)
        .where(Order.Status.in_(status_values(COMMITTING_STATES)))
        .where(Order.StartDate <= end_date)
        .where(Order.EndDate >= start_date)
    )
    if exclude_order_id:
        stmt = stmt.where(Order.OrderID != exclude_order_id)
    return [(row[0], row[1], int(row[2] or 0)) for row in db.execute(stmt).all()]


def _get_product_or_raise(db: Session, product_id: int) -> Product:
    product = db.get(Product, product_id)
    if not product:
        raise LookupError(f"Product {product_id} not found.")
    return product


def committed_units(
    db: Session,
    product_id: int,
    start_date: date,
    end_date: date,
    exclude_order_id: int | None = None,
) -> int:
    if end_date < start_date:
        return 0
    reservations = _committed_reservations(db, product_id, start_date, end_date, exclude_order_id)
    return max_daily_usage(reservations, start_date, end_date)


def available_units(
    db: Session,
    product_id: int,
    start_date: date,
    end_date: date,
    exclude_order_id: int | None = None,
) -> int:
    product = _get_product_or_raise(db, product_id)
    if end_date < start_date:
        return 0
    used = committed_units(db, product_id, start_date, end_date, exclude_order_id)
    return max(0, int(product.TotalQuantity or 0) - used)


def peak_commitment(db: Session, product_id: int, from_date: date | None = None) -> int:
    """Highest daily commitment of ``product_id`` from ``from_date`` onwards."""
    since = from_date or date.today()
    last_day = db.execute(
        select(func.max(Order.EndDate))
        .join(OrderItem, OrderItem.OrderID == Order.OrderID)
        .where(OrderItem.ProductID == product_id)
        .where(Order.Status.in_(status_values(COMMITTING_STATES)))
        .where(Order.EndDate >= since)
    ).scalar()
    if not last_day:
        return 0
    return committed_units(db, product_id, since, last_day)


def validate_cart(
    db: Session,
    items: Iterable[tuple[int, int]],
    start_date: date,
    end_date: date,
    exclude_order_id: int | None = None,
) -> dict[int, int]:
    """
    Check a whole cart of ``(product_id, quantity)`` lines against stock.

    Lines for the same product are summed before checking. Returns the
    remaining availability per product after the cart is applied.
    """
    if end_date < start_date:
        raise ValueError("endDate must be on or after startDate.")

    requested: dict[int, int] = defaultdict(int)
    for product_id, quantity in items:
        if int(quantity or 0) < 1:
            raise ValueError("Item quantity must be at least 1.")
        requested[int(product_id)] += int(quantity)

    remaining: dict[int, int] = {}
    for product_id, wanted in requested.items():
        product = _get_product_or_raise(db, product_id)
        total = int(product.TotalQuantity or 0)
        if wanted > total:
            raise AvailabilityError(
                f"Requested {wanted} of '{product.Name}' but total stock is {total}.",
                product_id=product_id,
                requested=wanted,
                available=total,
                committed=0,
            )
        committed = committed_units(db, product_id, start_date, end_date, exclude_order_id)
        available = max(0, total - committed)
        if wanted > available:
            raise AvailabilityError(
                f"Only {available} of '{product.Name}' available between {start_date.isoformat()} and "
                f"{end_date.isoformat()}; {committed} already committed by other orders.",
                product_id=product_id,
                requested=wanted,
                available=available,
                committed=committed,
            )
        remaining[product_id] = available - wanted
    return remaining


def asset_is_booked(
    db: Session,
    asset_id: int,
    start_date: date,
    end_date: date,
    exclude_order_id: int | None = None,
) -> bool:
    stmt = (
        select(OrderItem.OrderItemID)
        .join(Order, Order.OrderID == OrderItem.OrderID)
        .where(OrderItem.AssetID == asset_id)
        .where(Order.Status.in_(status_values(COMMITTING_STATES)))
        .where(Order.StartDate <= end_date)
        .where(Order.EndDate >= start_date)
    )
    if exclude_order_id:
        stmt = stmt.where(Order.OrderID != exclude_order_id)
    return db.execute(stmt.limit(1)).first() is not None
