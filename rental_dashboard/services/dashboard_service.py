from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from rental_dashboard.models.rental_models import Order, OrderItem, Product, Profile
from rental_dashboard.services.order_state_service import (
    COMMITTING_STATES,
    OrderStatus,
    SCHEDULED_STATES,
    STATUS_LABELS,
    normalize_status,
    status_values,
)
from rental_dashboard.services.pricing_service import to_decimal


MONTH_LABELS = ["jan", "fev", "mar", "abr", "mai", "jun", "jul", "ago", "set", "out", "nov", "dez"]


def _owned(stmt, model, owner_id: int | None):
    if owner_id is not None:
        stmt = stmt.where(model.OwnerID == owner_id)
    return stmt


def is_company_configured(profile: Profile | None) -> bool:
    if not profile:
        return False
    return bool((profile.BusinessName or "").strip() and (profile.BusinessCnpj or "").strip())


def get_metrics(db: Session, owner_id: int | None = None) -> dict:
    total_orders = db.execute(_owned(select(func.count(Order.OrderID)), Order, owner_id)).scalar() or 0
    active_rentals = db.execute(
        _owned(select(func.count(Order.OrderID)), Order, owner_id)
        .where(Order.Status.in_(status_values(COMMITTING_STATES)))
    ).scalar() or 0
    revenue = db.execute(
        _owned(select(func.coalesce(func.sum(Order.TotalAmount), 0)), Order, owner_id)
        .where(Order.Status != OrderStatus.CANCELED.value)
    ).scalar()
    customers = db.execute(
        _owned(select(func.count(func.distinct(Order.CustomerName))), Order, owner_id)
    ).scalar() or 0
    product_count = db.execute(_owned(select(func.count(Product.ProductID)), Product, owner_id)).scalar() or 0
    profile = db.get(Profile, owner_id) if owner_id is not None else None

    return {
        "totalOrders": int(total_orders),
        "activeRentals": int(active_rentals),
        "totalRevenue": to_decimal(revenue),
        "totalCustomers": int(customers),
        "productCount": int(product_count),
        "companyConfigured": is_company_configured(profile),
        "hasProducts": int(product_count) > 0,
    }


def _order_summary(order: Order) -> dict:
    status = normalize_status(order.Status)
    return {
        "orderID": order.OrderID,
        "orderNumber": order.OrderNumber,
        "customerName": order.CustomerName,
        "customerPhone": order.CustomerPhone,
        "startDate": order.StartDate.isoformat(),
        "endDate": order.EndDate.isoformat(),
        "status": status.value,
        "statusLabel": STATUS_LABELS[status],
        "deliveryMethod": order.DeliveryMethod,
        "totalAmount": order.TotalAmount,
        "itemCount": sum(int(item.Quantity or 0) for item in order.Items),
    }


def pending_pickups(db: Session, owner_id: int | None = None, today: date | None = None) -> list[dict]:
    """Committed orders starting today that have not been handed out yet."""
    day = today or date.today()
    waiting = COMMITTING_STATES - {OrderStatus.PICKED_UP}
    rows = db.execute(
        _owned(select(Order).options(selectinload(Order.Items)), Order, owner_id)
        .where(Order.Status.in_(status_values(waiting)))
        .where(Order.StartDate == day)
        .order_by(Order.OrderID)
    ).scalars().all()
    return [_order_summary(order) for order in rows]


def pending_returns(db: Session, owner_id: int | None = None, today: date | None = None) -> list[dict]:
    day = today or date.today()
    rows = db.execute(
        _owned(select(Order).options(selectinload(Order.Items)), Order, owner_id)
        .where(Order.Status == OrderStatus.PICKED_UP.value)
        .where(Order.EndDate == day)
        .order_by(Order.OrderID)
    ).scalars().all()
    return [_order_summary(order) for order in rows]


def _shift_month(year: int, month: int, delta: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def monthly_revenue(
    db: Session,
    owner_id: int | None = None,
    months: int = 6,
    today: date | None = None,
) -> list[dict]:
    """
    Revenue of non-canceled orders grouped by the month their rental starts.

    Returns ``months`` entries, oldest first, ending with the current month.
    Months without orders are present with a zero total.
    """
    if months < 1:
        raise ValueError("months must be at least 1.")
    day = today or date.today()
    first_year, first_month = _shift_month(day.year, day.month, -(months - 1))
    window_start = date(first_year, first_month, 1)

    rows = db.execute(
        _owned(select(Order.StartDate, Order.TotalAmount), Order, owner_id)
        .where(Order.Status != OrderStatus.CANCELED.value)
        .where(Order.StartDate >= window_start)
    ).all()

    buckets: dict[tuple[int, int], Decimal] = {}
    for offset in range(months):
        buckets[_shift_month(first_year, first_month, offset)] = Decimal("0")
    for start_date, amount in rows:
        key = (start_date.year, start_date.month)
        if key in buckets:
            buckets[key] += to_decimal(amount)

    return [
        {
            "year": year,
            "month": month,
            "label": f"{MONTH_LABELS[month - 1]}/{str(year)[2:]}",
            "revenue": total,
        }
        for (year, month), total in buckets.items()
    ]


def build_timeline(
    db: Session,
    owner_id: int | None = None,
    start: date | None = None,
    days: int = 15,
) -> dict:
    """
    One row per product with the orders that touch ``[start, start + days)``.

    Orders that are waiting for a signature are shown too; they just do not
    hold stock yet.
    """
    if days < 1:
        raise ValueError("days must be at least 1.")
    window_start = start or date.today()
    window_end = window_start + timedelta(days=days - 1)

    products = db.execute(
        _owned(select(Product), Product, owner_id).order_by(Product.Name, Product.ProductID)
    ).scalars().all()
    rows = db.execute(
        select(OrderItem, Order)
        .join(Order, Order.OrderID == OrderItem.OrderID)
        .where(Order.Status.in_(status_values(SCHEDULED_STATES)))
        .where(Order.StartDate <= window_end)
        .where(Order.EndDate >= window_start)
        .order_by(Order.StartDate, Order.OrderID)
    ).all()

    bookings: dict[int, list[dict]] = {}
    for item, order in rows:
        status = normalize_status(order.Status)
        bookings.setdefault(item.ProductID, []).append(
            {
                "orderID": order.OrderID,
                "orderNumber": order.OrderNumber,
                "customerName": order.CustomerName,
                "startDate": order.StartDate.isoformat(),
                "endDate": order.EndDate.isoformat(),
                "quantity": int(item.Quantity or 0),
                "status": status.value,
                "statusLabel": STATUS_LABELS[status],
                "holdsStock": status in COMMITTING_STATES,
            }
        )

    return {
        "startDate": window_start.isoformat(),
        "endDate": window_end.isoformat(),
        "days": [(window_start + timedelta(days=offset)).isoformat() for offset in range(days)],
        "rows": [
            {
                "productID": product.ProductID,
                "name": product.Name,
                "totalQuantity": int(product.TotalQuantity or 0),
                "bookings": bookings.get(product.ProductID, []),
            }
            for product in products
        ],
    }
