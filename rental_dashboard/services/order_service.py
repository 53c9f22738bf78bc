from __future__ import annotations

import os
import secrets
from datetime import date, datetime
from typing import NamedTuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from rental_dashboard.models.rental_models import Asset, Order, OrderItem, Product
from rental_dashboard.services.availability_service import asset_is_booked, validate_cart
from rental_dashboard.services.order_state_service import (
    COMMITTING_STATES,
    OrderStatus,
    OrderTransitionError,
    STATUS_LABELS,
    available_actions,
    is_terminal,
    is_editable,
    next_status,
    normalize_status,
)
from rental_dashboard.services.pricing_service import recalc_total_cost


MAX_RENTAL_DAYS = int(os.environ.get("MAX_RENTAL_DAYS") or "366")
FULFILLMENT_TYPES = {"immediate", "reservation"}
DELIVERY_METHODS = {"pickup", "delivery"}


def generate_order_number(db: Session, prefix: str = "LOC") -> str:
    token = (prefix or "LOC").upper()
    last = db.execute(
        select(Order)
        .where(Order.OrderNumber.like(f"{token}-%"))
        .order_by(Order.OrderID.desc())
    ).scalars().first()
    next_number = 1
    if last and last.OrderNumber:
        raw = last.OrderNumber.replace(f"{token}-", "")
        try:
            next_number = int(raw) + 1
        except ValueError:
            next_number = 1
    return f"{token}-{next_number:03d}"


def generate_contract_token() -> str:
    return secrets.token_urlsafe(24)


def validate_order_fields(
    customer_name: str | None,
    start_date: date,
    end_date: date,
    fulfillment_type: str,
    delivery_method: str,
    delivery_address: str | None,
) -> None:
    if not (customer_name or "").strip():
        raise ValueError("customerName is required.")
    if end_date < start_date:
        raise ValueError("endDate must be on or after startDate.")
    if (end_date - start_date).days + 1 > MAX_RENTAL_DAYS:
        raise ValueError(f"A rental cannot be longer than {MAX_RENTAL_DAYS} days.")
    if fulfillment_type not in FULFILLMENT_TYPES:
        raise ValueError("fulfillmentType must be immediate or reservation.")
    if delivery_method not in DELIVERY_METHODS:
        raise ValueError("deliveryMethod must be pickup or delivery.")
    if delivery_method == "delivery" and not (delivery_address or "").strip():
        raise ValueError("deliveryAddress is required for delivery orders.")


def lock_products(db: Session, product_ids, owner_id: int | None = None) -> dict[int, Product]:
    """
    Row-lock the products of a cart for the rest of the transaction.

    With ``owner_id`` only that user's products are looked up; anyone else's
    id reads as missing and no row of theirs is locked.
    """
    ids = sorted({int(product_id) for product_id in product_ids})
    if not ids:
        return {}
    stmt = select(Product).where(Product.ProductID.in_(ids))
    if owner_id is not None:
        stmt = stmt.where(Product.OwnerID == owner_id)
    rows = db.execute(stmt.with_for_update()).scalars().all()
    found = {product.ProductID: product for product in rows}
    missing = [product_id for product_id in ids if product_id not in found]
    if missing:
        raise LookupError(f"Product {missing[0]} not found.")
    return found


class CartLine(NamedTuple):
    productID: int
    quantity: int
    assetID: int | None = None


def order_lines(order: Order) -> list[CartLine]:
    return [CartLine(item.ProductID, int(item.Quantity or 0), item.AssetID) for item in order.Items]


def check_asset_line(
    db: Session,
    product: Product,
    line,
    start_date: date,
    end_date: date,
    exclude_order_id: int | None = None,
) -> None:
    asset_id = getattr(line, "assetID", None)
    if asset_id is None:
        return
    if product.Kind != "trackable":
        raise ValueError(f"Product '{product.Name}' is bulk stock and has no serial numbers.")
    asset = db.get(Asset, asset_id)
    if not asset or asset.ProductID != product.ProductID:
        raise ValueError(f"Asset {asset_id} does not belong to product {product.ProductID}.")
    if int(line.quantity) != 1:
        raise ValueError("Lines bound to a serial number must have quantity 1.")
    if asset_is_booked(db, asset.AssetID, start_date, end_date, exclude_order_id):
        raise ValueError(f"Serial {asset.SerialNumber} is already booked for those dates.")


def build_order_items(
    db: Session,
    products: dict[int, Product],
    lines,
    start_date: date,
    end_date: date,
    exclude_order_id: int | None = None,
) -> list[OrderItem]:
    """
    Turn request lines into OrderItem rows, capturing the current daily price.

    An explicit ``assetID`` must belong to the product and the product must be
    trackable, and the serial must not be handed out to another committed order
    over the same dates.
    """
    items: list[OrderItem] = []
    for line in lines:
        product = products[int(line.productID)]
        asset_id = getattr(line, "assetID", None)
        check_asset_line(db, product, line, start_date, end_date, exclude_order_id)
        items.append(
            OrderItem(
                ProductID=product.ProductID,
                AssetID=asset_id,
                Quantity=int(line.quantity),
                UnitPrice=product.DailyPrice or 0,
            )
        )
    return items


def check_cart(
    db: Session,
    lines,
    start_date: date,
    end_date: date,
    exclude_order_id: int | None = None,
    owner_id: int | None = None,
) -> dict[int, Product]:
    if not lines:
        raise ValueError("Add at least one item to the order.")
    asset_ids = [line.assetID for line in lines if getattr(line, "assetID", None) is not None]
    if len(asset_ids) != len(set(asset_ids)):
        raise ValueError("The same serial number appears more than once in the order.")
    products = lock_products(db, [line.productID for line in lines], owner_id)
    validate_cart(
        db,
        [(line.productID, line.quantity) for line in lines],
        start_date,
        end_date,
        exclude_order_id=exclude_order_id,
    )
    return products


def recheck_order_stock(db: Session, order: Order, start_date: date, end_date: date) -> None:
    """Re-validate an order's current items for new dates, ignoring the order itself."""
    lines = order_lines(order)
    products = check_cart(db, lines, start_date, end_date, exclude_order_id=order.OrderID, owner_id=order.OwnerID)
    for line in lines:
        check_asset_line(db, products[line.productID], line, start_date, end_date, order.OrderID)


def ensure_stock_for_transition(db: Session, order: Order, action) -> None:
    """
    Moving into a stock-holding status claims the order's items for its dates,
    so availability is checked again first.
    """
    current = normalize_status(order.Status)
    target = next_status(
        current,
        action,
        fulfillment_type=order.FulfillmentType,
        signed=order.SignedAt is not None,
    )
    if current in COMMITTING_STATES or target not in COMMITTING_STATES:
        return
    recheck_order_stock(db, order, order.StartDate, order.EndDate)


def replace_order_items(order: Order, items: list[OrderItem]) -> None:
    # delete-orphan removes the old rows on flush, in the caller's transaction.
    order.Items.clear()
    order.Items.extend(items)
    recalc_total_cost(order)


def ensure_editable(order: Order) -> None:
    if not is_editable(order.Status):
        raise OrderTransitionError(
            f"Order {order.OrderNumber} is {normalize_status(order.Status).value} and can no longer be edited."
        )


def is_overdue(order: Order, today: date | None = None) -> bool:
    current = normalize_status(order.Status)
    if current == OrderStatus.RETURNED and order.ReturnedAt:
        return order.ReturnedAt.date() > order.EndDate
    if current == OrderStatus.PICKED_UP:
        return (today or date.today()) > order.EndDate
    return False


def _isoformat(value: date | datetime | None) -> str | None:
    return value.isoformat() if value else None


def serialize_order(order: Order, include_signature: bool = False) -> dict:
    status = normalize_status(order.Status)
    items = []
    for item in order.Items:
        items.append(
            {
                "orderItemID": item.OrderItemID,
                "productID": item.ProductID,
                "assetID": item.AssetID,
                "quantity": item.Quantity,
                "unitPrice": item.UnitPrice,
                "product": {
                    "productID": item.Product.ProductID,
                    "name": item.Product.Name,
                    "kind": item.Product.Kind,
                } if item.Product else None,
                "serialNumber": item.Asset.SerialNumber if item.Asset else None,
            }
        )

    payload = {
        "orderID": order.OrderID,
        "orderNumber": order.OrderNumber,
        "customerName": order.CustomerName,
        "customerPhone": order.CustomerPhone,
        "customerCpf": order.CustomerCpf,
        "customerEmail": order.CustomerEmail,
        "deliveryAddress": order.DeliveryAddress,
        "startDate": _isoformat(order.StartDate),
        "endDate": _isoformat(order.EndDate),
        "status": status.value,
        "statusLabel": STATUS_LABELS[status],
        "availableActions": available_actions(status, signed=order.SignedAt is not None),
        "isClosed": is_terminal(status),
        "fulfillmentType": order.FulfillmentType,
        "deliveryMethod": order.DeliveryMethod,
        "paymentMethod": order.PaymentMethod,
        "notes": order.Notes,
        "totalAmount": order.TotalAmount,
        "signedAt": _isoformat(order.SignedAt),
        "signerIp": order.SignerIp,
        "signerUserAgent": order.SignerUserAgent,
        "pickedUpAt": _isoformat(order.PickedUpAt),
        "returnedAt": _isoformat(order.ReturnedAt),
        "canceledAt": _isoformat(order.CanceledAt),
        "isOverdue": is_overdue(order),
        "contractToken": order.ContractToken,
        "createdDate": _isoformat(order.CreatedDate),
        "updatedDate": _isoformat(order.UpdatedDate),
        "items": items,
    }
    if include_signature:
        payload["signatureImage"] = order.SignatureImage
    return payload
