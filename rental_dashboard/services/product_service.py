from __future__ import annotations

from datetime import date

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from rental_dashboard.models.rental_models import Asset, OrderItem, Product
from rental_dashboard.services.availability_service import committed_units, peak_commitment
from rental_dashboard.services.pricing_service import to_decimal


PRODUCT_KINDS = {"trackable", "bulk"}


class StockCommitmentError(ValueError):
    def __init__(self, message: str, *, committed: int):
        super().__init__(message)
        self.committed = committed


def normalize_kind(raw: str | None) -> str:
    kind = (raw or "trackable").strip().lower()
    if kind not in PRODUCT_KINDS:
        raise ValueError("kind must be trackable or bulk.")
    return kind


def normalize_serial(raw: str | None) -> str:
    serial = (raw or "").strip().upper()
    if not serial:
        raise ValueError("serialNumber is required.")
    return serial


def validate_product(product: Product) -> None:
    """Normalize and check a product's fields in place before it is saved."""
    product.Name = (product.Name or "").strip()
    if not product.Name:
        raise ValueError("name is required.")
    product.Kind = normalize_kind(product.Kind)
    if int(product.TotalQuantity or 0) < 0:
        raise ValueError("totalQuantity must be zero or more.")
    if to_decimal(product.DailyPrice) < 0:
        raise ValueError("dailyPrice must be zero or more.")
    if product.ReplacementValue is not None and to_decimal(product.ReplacementValue) < 0:
        raise ValueError("replacementValue must be zero or more.")


def ensure_stock_reduction_allowed(
    db: Session,
    product: Product,
    new_total: int,
    as_of: date | None = None,
) -> None:
    if new_total < 0:
        raise ValueError("totalQuantity must be zero or more.")
    if product.ProductID is None or new_total >= int(product.TotalQuantity or 0):
        return
    committed = peak_commitment(db, product.ProductID, as_of)
    if new_total < committed:
        raise StockCommitmentError(
            f"Cannot reduce total stock of '{product.Name}' to {new_total}: "
            f"{committed} units are committed by active orders.",
            committed=committed,
        )


def ensure_product_deletable(db: Session, product: Product) -> None:
    referenced = db.execute(
        select(func.count(OrderItem.OrderItemID)).where(OrderItem.ProductID == product.ProductID)
    ).scalar()
    if referenced:
        raise StockCommitmentError(
            f"Product '{product.Name}' is referenced by {int(referenced)} order item(s); it cannot be deleted.",
            committed=int(referenced),
        )


def count_assets(db: Session, product_id: int) -> int:
    return int(db.execute(select(func.count(Asset.AssetID)).where(Asset.ProductID == product_id)).scalar() or 0)


def serialize_product(product: Product, db: Session | None = None, as_of: date | None = None) -> dict:
    payload = {
        "productID": product.ProductID,
        "name": product.Name,
        "kind": product.Kind,
        "totalQuantity": int(product.TotalQuantity or 0),
        "dailyPrice": product.DailyPrice,
        "replacementValue": product.ReplacementValue,
        "createdDate": product.CreatedDate,
        "updatedDate": product.UpdatedDate,
    }
    if db is not None and product.ProductID is not None:
        today = as_of or date.today()
        active = committed_units(db, product.ProductID, today, today)
        payload["activeRentals"] = active
        payload["availableQuantity"] = max(0, payload["totalQuantity"] - active)
        payload["assetCount"] = count_assets(db, product.ProductID) if product.Kind == "trackable" else None
    return payload


def serialize_asset(asset: Asset) -> dict:
    return {
        "assetID": asset.AssetID,
        "productID": asset.ProductID,
        "serialNumber": asset.SerialNumber,
        "createdDate": asset.CreatedDate,
    }
