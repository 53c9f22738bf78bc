import logging
import os
import threading
import time
from datetime import date, datetime

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse
from pydantic import BaseModel, ConfigDict, ValidationError
from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload
from starlette.middleware.sessions import SessionMiddleware

load_dotenv()

from rental_dashboard.db.deps import get_db  # noqa: E402
from rental_dashboard.models.rental_models import Asset, AuditLog, Order, OrderItem, Product, Profile  # noqa: E402
from rental_dashboard.schemas.orders import (  # noqa: E402
    CreateOrderDto,
    PublicSignRequest,
    QuoteRequest,
    SignRequest,
    UpdateOrderDto,
)
from rental_dashboard.schemas.products import AssetCreate, ProductUpsert  # noqa: E402
from rental_dashboard.schemas.settings import ProfileUpdate  # noqa: E402
from rental_dashboard.services.availability_service import available_units, committed_units  # noqa: E402
from rental_dashboard.services.contract_service import (  # noqa: E402
    build_contract_message,
    build_contract_url,
    build_whatsapp_link,
    get_contract_data,
    load_contract_order,
    render_contract_html,
)
from rental_dashboard.services.dashboard_service import (  # noqa: E402
    build_timeline,
    get_metrics,
    is_company_configured,
    monthly_revenue,
    pending_pickups,
    pending_returns,
)
from rental_dashboard.services.order_service import (  # noqa: E402
    build_order_items,
    check_cart,
    ensure_editable,
    ensure_stock_for_transition,
    generate_contract_token,
    generate_order_number,
    recheck_order_stock,
    replace_order_items,
    serialize_order,
    validate_order_fields,
)
from rental_dashboard.services.order_state_service import (  # noqa: E402
    INITIAL_STATES,
    OrderAction,
    OrderStatus,
    apply_transition,
    normalize_status,
)
from rental_dashboard.services.pricing_service import compute_order_total, recalc_total_cost  # noqa: E402
from rental_dashboard.services.product_service import (  # noqa: E402
    count_assets,
    ensure_product_deletable,
    ensure_stock_reduction_allowed,
    normalize_serial,
    serialize_asset,
    serialize_product,
    validate_product,
)
from rental_dashboard.services.user_access_service import (  # noqa: E402
    authenticate,
    create_session,
    get_session,
    get_user_by_email,
    normalize_email,
    remove_session,
)

app = FastAPI()


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1:5173,http://localhost:5173,http://127.0.0.1:8000,http://localhost:8000",
)
_CORS_ALLOW_CREDENTIALS = str(os.environ.get("CORS_ALLOW_CREDENTIALS", "true")).strip().lower() in {"1", "true", "yes", "on"}
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(
    SessionMiddleware,
    secret_key=(os.environ.get("SESSION_SIGNING_SECRET") or "").strip(),
    session_cookie="rental_dashboard_session",
    same_site="lax",
    https_only=False,
)

AUTH_ATTEMPT_WINDOW_SECONDS = int(os.environ.get("AUTH_ATTEMPT_WINDOW_SECONDS") or "300")
AUTH_MAX_ATTEMPTS_PER_IP = int(os.environ.get("AUTH_MAX_ATTEMPTS_PER_IP") or "50")
AUTH_MAX_ATTEMPTS_PER_ACCOUNT = int(os.environ.get("AUTH_MAX_ATTEMPTS_PER_ACCOUNT") or "8")
AUTH_LOCKOUT_SECONDS = int(os.environ.get("AUTH_LOCKOUT_SECONDS") or "900")
AUTH_LOGGER = logging.getLogger("rental_dashboard.auth")
ORDERS_LOGGER = logging.getLogger("rental_dashboard.orders")
INVENTORY_LOGGER = logging.getLogger("rental_dashboard.inventory")
_AUTH_GUARD_LOCK = threading.Lock()
_AUTH_ATTEMPTS_BY_IP: dict[str, list[float]] = {}
_AUTH_ATTEMPTS_BY_ACCOUNT: dict[str, list[float]] = {}
_AUTH_LOCKOUT_UNTIL_BY_ACCOUNT: dict[str, float] = {}

PRODUCT_FIELD_MAP = {
    "name": "Name",
    "kind": "Kind",
    "totalQuantity": "TotalQuantity",
    "dailyPrice": "DailyPrice",
    "replacementValue": "ReplacementValue",
}
ORDER_FIELD_MAP = {
    "customerName": "CustomerName",
    "customerPhone": "CustomerPhone",
    "customerCpf": "CustomerCpf",
    "customerEmail": "CustomerEmail",
    "deliveryAddress": "DeliveryAddress",
    "startDate": "StartDate",
    "endDate": "EndDate",
    "fulfillmentType": "FulfillmentType",
    "deliveryMethod": "DeliveryMethod",
    "paymentMethod": "PaymentMethod",
    "notes": "Notes",
}
PROFILE_FIELD_MAP = {
    "businessName": "BusinessName",
    "businessCnpj": "BusinessCnpj",
    "businessPhone": "BusinessPhone",
    "businessAddress": "BusinessAddress",
    "businessCity": "BusinessCity",
    "businessState": "BusinessState",
    "signatureImage": "SignatureImage",
}
# An explicit null on these keeps the stored value.
REQUIRED_ORDER_FIELDS = {"customerName", "startDate", "endDate", "fulfillmentType", "deliveryMethod", "items"}
ACTION_AUDIT_NAMES = {
    OrderAction.SIGN: "SignContract",
    OrderAction.CONFIRM_PICKUP: "ConfirmPickup",
    OrderAction.CONFIRM_RETURN: "ConfirmReturn",
    OrderAction.CANCEL: "Cancel",
}


class AuthLoginRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str | None = None
    password: str | None = None


def log_audit(db: Session, entity_type: str, entity_id: int, action: str, details: str | None = None, user_id: int | None = None) -> None:
    db.add(
        AuditLog(
            EntityType=entity_type,
            EntityID=entity_id,
            Action=action,
            Details=details,
            UserID=user_id,
            CreatedAt=datetime.now(),
        )
    )


def _get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        candidate = forwarded.split(",")[0].strip()
        if candidate:
            return candidate
    return request.client.host if request.client and request.client.host else "unknown"


def _prune_attempts(attempts: list[float], now_ts: float) -> list[float]:
    cutoff = now_ts - max(AUTH_ATTEMPT_WINDOW_SECONDS, 1)
    return [ts for ts in attempts if ts >= cutoff]


def _check_login_guard(client_ip: str, account_key: str) -> int | None:
    now_ts = time.time()
    with _AUTH_GUARD_LOCK:
        lockout_until = _AUTH_LOCKOUT_UNTIL_BY_ACCOUNT.get(account_key)
        if lockout_until and lockout_until > now_ts:
            return max(1, int(lockout_until - now_ts))
        if lockout_until and lockout_until <= now_ts:
            _AUTH_LOCKOUT_UNTIL_BY_ACCOUNT.pop(account_key, None)

        ip_attempts = _prune_attempts(_AUTH_ATTEMPTS_BY_IP.get(client_ip, []), now_ts)
        account_attempts = _prune_attempts(_AUTH_ATTEMPTS_BY_ACCOUNT.get(account_key, []), now_ts)
        _AUTH_ATTEMPTS_BY_IP[client_ip] = ip_attempts
        _AUTH_ATTEMPTS_BY_ACCOUNT[account_key] = account_attempts

        if len(ip_attempts) >= max(AUTH_MAX_ATTEMPTS_PER_IP, 1):
            oldest = ip_attempts[0]
            return max(1, int((oldest + AUTH_ATTEMPT_WINDOW_SECONDS) - now_ts))
        if len(account_attempts) >= max(AUTH_MAX_ATTEMPTS_PER_ACCOUNT, 1):
            _AUTH_LOCKOUT_UNTIL_BY_ACCOUNT[account_key] = now_ts + max(AUTH_LOCKOUT_SECONDS, 1)
            return max(AUTH_LOCKOUT_SECONDS, 1)
    return None


def _record_login_failure(client_ip: str, account_key: str) -> None:
    now_ts = time.time()
    with _AUTH_GUARD_LOCK:
        ip_attempts = _prune_attempts(_AUTH_ATTEMPTS_BY_IP.get(client_ip, []), now_ts)
        account_attempts = _prune_attempts(_AUTH_ATTEMPTS_BY_ACCOUNT.get(account_key, []), now_ts)
        ip_attempts.append(now_ts)
        account_attempts.append(now_ts)
        _AUTH_ATTEMPTS_BY_IP[client_ip] = ip_attempts
        _AUTH_ATTEMPTS_BY_ACCOUNT[account_key] = account_attempts
        if len(account_attempts) >= max(AUTH_MAX_ATTEMPTS_PER_ACCOUNT, 1):
            _AUTH_LOCKOUT_UNTIL_BY_ACCOUNT[account_key] = now_ts + max(AUTH_LOCKOUT_SECONDS, 1)


def _record_login_success(account_key: str) -> None:
    with _AUTH_GUARD_LOCK:
        _AUTH_ATTEMPTS_BY_ACCOUNT.pop(account_key, None)
        _AUTH_LOCKOUT_UNTIL_BY_ACCOUNT.pop(account_key, None)


def _audit_auth_event(db: Session, *, action: str, details: str, user_id: int | None = None) -> None:
    try:
        log_audit(db, "Auth", int(user_id or 0), action, details, user_id=user_id)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        AUTH_LOGGER.exception("Could not write auth audit event action=%s", action)


def _invalid_login_error() -> HTTPException:
    return HTTPException(status_code=401, detail="Invalid credentials.")


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, LookupError):
        return HTTPException(status_code=404, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def _commit_or_500(db: Session, logger: logging.Logger, what: str) -> None:
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Commit failed while saving %s", what)
        raise HTTPException(status_code=500, detail=f"Could not save {what}.") from exc


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


@app.post("/api/auth/login")
def auth_login(payload: dict, request: Request, db: Session = Depends(get_db)):
    client_ip = _get_client_ip(request)
    try:
        parsed = AuthLoginRequest.model_validate(payload)
    except ValidationError:
        _audit_auth_event(db, action="LoginRejected", details=f"ip={client_ip} reason=invalid_payload", user_id=None)
        raise HTTPException(status_code=400, detail="Invalid login request.")

    email = normalize_email(parsed.email)
    password = str(parsed.password or "")
    if not email or not password:
        _audit_auth_event(db, action="LoginRejected", details=f"ip={client_ip} reason=missing_identity", user_id=None)
        raise HTTPException(status_code=400, detail="Invalid login request.")

    account_key = f"user:{email}"
    retry_after = _check_login_guard(client_ip, account_key)
    if retry_after is not None:
        _audit_auth_event(db, action="LoginThrottled", details=f"ip={client_ip} key={account_key} retry_after={retry_after}", user_id=None)
        AUTH_LOGGER.warning("Login throttled ip=%s key=%s retry_after=%s", client_ip, account_key, retry_after)
        raise HTTPException(
            status_code=429,
            detail="Too many login attempts. Please try again later.",
            headers={"Retry-After": str(retry_after)},
        )

    user = authenticate(db, email, password)
    if not user:
        known = get_user_by_email(db, email)
        reason = "invalid_password" if known else "unknown_user"
        _record_login_failure(client_ip, account_key)
        _audit_auth_event(
            db,
            action="LoginFailed",
            details=f"ip={client_ip} key={account_key} reason={reason}",
            user_id=known.UserID if known else None,
        )
        AUTH_LOGGER.warning("Login failed ip=%s key=%s reason=%s", client_ip, account_key, reason)
        raise _invalid_login_error()

    session_payload = {
        "userID": user.UserID,
        "email": user.Email,
        "businessName": user.Profile.BusinessName if user.Profile else None,
    }
    token = create_session(session_payload)
    request.session["user"] = dict(session_payload)
    _record_login_success(account_key)
    _audit_auth_event(db, action="LoginSuccess", details=f"ip={client_ip} key={account_key}", user_id=user.UserID)
    AUTH_LOGGER.info("Login success ip=%s key=%s user_id=%s", client_ip, account_key, user.UserID)
    return {"sessionToken": token, "user": session_payload}


@app.post("/api/auth/logout")
def auth_logout(request: Request, x_session_token: str | None = Header(None, alias="X-Session-Token")):
    request.session.clear()
    remove_session(x_session_token)
    return {"ok": True}


@app.get("/api/auth/me")
def auth_me(request: Request, x_session_token: str | None = Header(None, alias="X-Session-Token")):
    session = _require_session_or_401(request, x_session_token)
    return {"user": session}


@app.get("/api/settings")
def get_settings(
    request: Request,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    owner_id = _require_owner_id(request, x_session_token)
    return _serialize_profile(db.get(Profile, owner_id))


@app.put("/api/settings")
def update_settings(
    request: Request,
    payload: ProfileUpdate,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    owner_id = _require_owner_id(request, x_session_token)
    changes = payload.model_dump(exclude_unset=True)
    signature = (changes.get("signatureImage") or "").strip()
    if signature and not signature.startswith("data:image/"):
        raise HTTPException(status_code=400, detail="signatureImage must be an image data URL.")

    profile = db.get(Profile, owner_id)
    if not profile:
        profile = Profile(UserID=owner_id)
        db.add(profile)
    for field, value in changes.items():
        if isinstance(value, str):
            value = value.strip() or None
        setattr(profile, PROFILE_FIELD_MAP[field], value)
    profile.UpdatedAt = datetime.now()
    log_audit(db, "Profile", owner_id, "UpdateSettings", ",".join(sorted(changes)), user_id=owner_id)
    _commit_or_500(db, AUTH_LOGGER, "settings")
    return _serialize_profile(profile)


@app.get("/api/products")
def get_products(
    request: Request,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    owner_id = _require_owner_id(request, x_session_token)
    products = db.execute(
        select(Product).where(Product.OwnerID == owner_id).order_by(Product.Name, Product.ProductID)
    ).scalars().all()
    return [serialize_product(product, db) for product in products]


@app.get("/api/products/{product_id}")
def get_product(
    product_id: int,
    request: Request,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    owner_id = _require_owner_id(request, x_session_token)
    return serialize_product(_get_owned_product_or_404(db, product_id, owner_id), db)


@app.post("/api/products")
def create_product(
    request: Request,
    payload: ProductUpsert,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    owner_id = _require_owner_id(request, x_session_token)
    product = Product(OwnerID=owner_id, Kind="trackable", TotalQuantity=0, DailyPrice=0)
    for field, value in payload.model_dump(exclude_unset=True, exclude_none=True).items():
        setattr(product, PRODUCT_FIELD_MAP[field], value)
    try:
        validate_product(product)
    except ValueError as exc:
        raise _http_error(exc) from exc

    product.CreatedDate = datetime.now()
    product.UpdatedDate = datetime.now()
    db.add(product)
    db.flush()
    log_audit(db, "Product", product.ProductID, "CreateProduct", f"{product.Name} stock={product.TotalQuantity}", user_id=owner_id)
    _commit_or_500(db, INVENTORY_LOGGER, "product")
    INVENTORY_LOGGER.info("Product %s created by user %s", product.ProductID, owner_id)
    return serialize_product(product, db)


@app.put("/api/products/{product_id}")
def update_product(
    product_id: int,
    request: Request,
    payload: ProductUpsert,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    owner_id = _require_owner_id(request, x_session_token)
    product = _get_owned_product_or_404(db, product_id, owner_id, lock=True)
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    previous_total = int(product.TotalQuantity or 0)
    try:
        if "totalQuantity" in changes:
            ensure_stock_reduction_allowed(db, product, int(changes["totalQuantity"]))
        if changes.get("kind") == "bulk" and product.Kind != "bulk" and count_assets(db, product.ProductID):
            raise ValueError("Remove the serial numbers of this product before switching it to bulk stock.")
        for field, value in changes.items():
            setattr(product, PRODUCT_FIELD_MAP[field], value)
        validate_product(product)
    except ValueError as exc:
        db.rollback()
        raise _http_error(exc) from exc

    product.UpdatedDate = datetime.now()
    details = ",".join(sorted(changes))
    if int(product.TotalQuantity or 0) != previous_total:
        details = f"{details} stock {previous_total}->{product.TotalQuantity}"
    log_audit(db, "Product", product.ProductID, "UpdateProduct", details, user_id=owner_id)
    _commit_or_500(db, INVENTORY_LOGGER, "product")
    return serialize_product(product, db)


@app.delete("/api/products/{product_id}")
def delete_product(
    product_id: int,
    request: Request,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    owner_id = _require_owner_id(request, x_session_token)
    product = _get_owned_product_or_404(db, product_id, owner_id, lock=True)
    try:
        ensure_product_deletable(db, product)
    except ValueError as exc:
        db.rollback()
        raise _http_error(exc) from exc

    db.delete(product)
    log_audit(db, "Product", product_id, "DeleteProduct", product.Name, user_id=owner_id)
    _commit_or_500(db, INVENTORY_LOGGER, "product")
    INVENTORY_LOGGER.info("Product %s deleted by user %s", product_id, owner_id)
    return {"message": "Deleted"}


@app.get("/api/products/{product_id}/assets")
def get_product_assets(
    product_id: int,
    request: Request,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    owner_id = _require_owner_id(request, x_session_token)
    _get_owned_product_or_404(db, product_id, owner_id)
    assets = db.execute(
        select(Asset).where(Asset.ProductID == product_id).order_by(Asset.SerialNumber)
    ).scalars().all()
    return [serialize_asset(asset) for asset in assets]


@app.post("/api/products/{product_id}/assets")
def create_product_asset(
    product_id: int,
    request: Request,
    payload: AssetCreate,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    owner_id = _require_owner_id(request, x_session_token)
    product = _get_owned_product_or_404(db, product_id, owner_id)
    if product.Kind != "trackable":
        raise HTTPException(status_code=400, detail="Serial numbers can only be added to trackable products.")
    try:
        serial = normalize_serial(payload.serialNumber)
    except ValueError as exc:
        raise _http_error(exc) from exc

    duplicate = db.execute(
        select(Asset.AssetID).where(Asset.ProductID == product_id).where(Asset.SerialNumber == serial)
    ).first()
    if duplicate:
        raise HTTPException(status_code=400, detail=f"Serial {serial} is already registered for this product.")

    asset = Asset(ProductID=product_id, SerialNumber=serial, CreatedDate=datetime.now())
    db.add(asset)
    db.flush()
    log_audit(db, "Asset", asset.AssetID, "CreateAsset", f"product={product_id} serial={serial}", user_id=owner_id)
    _commit_or_500(db, INVENTORY_LOGGER, "serial number")
    return serialize_asset(asset)


@app.delete("/api/assets/{asset_id}")
def delete_asset(
    asset_id: int,
    request: Request,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    owner_id = _require_owner_id(request, x_session_token)
    asset = db.get(Asset, asset_id)
    if not asset or not asset.Product or asset.Product.OwnerID != owner_id:
        raise HTTPException(status_code=404, detail="Asset not found")
    referenced = db.execute(select(OrderItem.OrderItemID).where(OrderItem.AssetID == asset_id).limit(1)).first()
    if referenced:
        raise HTTPException(status_code=400, detail=f"Serial {asset.SerialNumber} is referenced by an order.")

    db.delete(asset)
    log_audit(db, "Asset", asset_id, "DeleteAsset", asset.SerialNumber, user_id=owner_id)
    _commit_or_500(db, INVENTORY_LOGGER, "serial number")
    return {"message": "Deleted"}


@app.get("/api/products/{product_id}/availability")
def get_product_availability(
    product_id: int,
    request: Request,
    start_date: date = Query(..., alias="startDate"),
    end_date: date = Query(..., alias="endDate"),
    exclude_order_id: int | None = Query(None, alias="excludeOrderID"),
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    owner_id = _require_owner_id(request, x_session_token)
    product = _get_owned_product_or_404(db, product_id, owner_id)
    return {
        "productID": product_id,
        "startDate": start_date.isoformat(),
        "endDate": end_date.isoformat(),
        "totalQuantity": int(product.TotalQuantity or 0),
        "committed": committed_units(db, product_id, start_date, end_date, exclude_order_id),
        "available": available_units(db, product_id, start_date, end_date, exclude_order_id),
    }


@app.post("/api/orders/quote")
def quote_order(
    request: Request,
    payload: QuoteRequest,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    owner_id = _require_owner_id(request, x_session_token)
    lines = []
    for line in payload.items:
        if int(line.quantity) < 1:
            raise HTTPException(status_code=400, detail="Item quantity must be at least 1.")
        product = _get_owned_product_or_404(db, line.productID, owner_id)
        lines.append((product, int(line.quantity)))

    totals = compute_order_total(
        payload.startDate,
        payload.endDate,
        [(product.DailyPrice, quantity) for product, quantity in lines],
    )
    body = totals.as_dict()
    body["items"] = [
        {
            "productID": product.ProductID,
            "name": product.Name,
            "quantity": quantity,
            "unitPrice": product.DailyPrice,
        }
        for product, quantity in lines
    ]
    return body


@app.get("/api/orders")
def get_orders(
    request: Request,
    status: str | None = Query(None),
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    owner_id = _require_owner_id(request, x_session_token)
    stmt = _order_query().where(Order.OwnerID == owner_id).order_by(Order.OrderID.desc())
    if status:
        try:
            stmt = stmt.where(Order.Status == normalize_status(status).value)
        except ValueError as exc:
            raise _http_error(exc) from exc
    return [serialize_order(order) for order in db.execute(stmt).scalars().all()]


@app.get("/api/orders/{order_id}")
def get_order(
    order_id: int,
    request: Request,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    owner_id = _require_owner_id(request, x_session_token)
    return serialize_order(_get_owned_order_or_404(db, order_id, owner_id), include_signature=True)


@app.post("/api/orders")
def create_order(
    request: Request,
    payload: CreateOrderDto,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    owner_id = _require_owner_id(request, x_session_token)
    try:
        validate_order_fields(
            payload.customerName,
            payload.startDate,
            payload.endDate,
            payload.fulfillmentType,
            payload.deliveryMethod,
            payload.deliveryAddress,
        )
        initial_status = normalize_status(payload.status or OrderStatus.PENDING_SIGNATURE.value)
        if initial_status not in INITIAL_STATES:
            raise ValueError("Initial status must be pending_signature or reserved.")
        products = check_cart(db, payload.items, payload.startDate, payload.endDate, owner_id=owner_id)
        items = build_order_items(db, products, payload.items, payload.startDate, payload.endDate)
    except (LookupError, ValueError) as exc:
        db.rollback()
        raise _http_error(exc) from exc

    now = datetime.now()
    order = Order(
        OrderNumber=generate_order_number(db),
        OwnerID=owner_id,
        ContractToken=generate_contract_token(),
        CustomerName=payload.customerName.strip(),
        CustomerPhone=payload.customerPhone,
        CustomerCpf=payload.customerCpf,
        CustomerEmail=payload.customerEmail,
        DeliveryAddress=payload.deliveryAddress,
        StartDate=payload.startDate,
        EndDate=payload.endDate,
        Status=initial_status.value,
        FulfillmentType=payload.fulfillmentType,
        DeliveryMethod=payload.deliveryMethod,
        PaymentMethod=payload.paymentMethod,
        Notes=payload.notes,
        CreatedDate=now,
        UpdatedDate=now,
    )
    order.Items.extend(items)
    recalc_total_cost(order)
    db.add(order)
    db.flush()
    log_audit(db, "Order", order.OrderID, "CreateOrder", f"{order.OrderNumber} created with status {initial_status.value}", user_id=owner_id)
    _commit_or_500(db, ORDERS_LOGGER, "order")
    ORDERS_LOGGER.info("Order %s created by user %s total=%s", order.OrderNumber, owner_id, order.TotalAmount)
    return serialize_order(_get_owned_order_or_404(db, order.OrderID, owner_id))


@app.put("/api/orders/{order_id}")
def update_order(
    order_id: int,
    request: Request,
    payload: UpdateOrderDto,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    owner_id = _require_owner_id(request, x_session_token)
    order = _get_owned_order_or_404(db, order_id, owner_id, lock=True)
    changes = {
        field: value
        for field, value in payload.model_dump(exclude_unset=True).items()
        if value is not None or field not in REQUIRED_ORDER_FIELDS
    }
    new_items = changes.pop("items", None)
    start_date = changes.get("startDate", order.StartDate)
    end_date = changes.get("endDate", order.EndDate)

    try:
        ensure_editable(order)
        validate_order_fields(
            changes.get("customerName", order.CustomerName),
            start_date,
            end_date,
            changes.get("fulfillmentType", order.FulfillmentType),
            changes.get("deliveryMethod", order.DeliveryMethod),
            changes.get("deliveryAddress", order.DeliveryAddress),
        )
        if payload.items is not None:
            products = check_cart(
                db, payload.items, start_date, end_date, exclude_order_id=order.OrderID, owner_id=owner_id
            )
            items = build_order_items(db, products, payload.items, start_date, end_date, exclude_order_id=order.OrderID)
        elif start_date != order.StartDate or end_date != order.EndDate:
            recheck_order_stock(db, order, start_date, end_date)
    except (LookupError, ValueError) as exc:
        db.rollback()
        raise _http_error(exc) from exc

    for field, value in changes.items():
        setattr(order, ORDER_FIELD_MAP[field], value)
    if new_items is not None:
        replace_order_items(order, items)
    else:
        recalc_total_cost(order)
    order.UpdatedDate = datetime.now()

    details = ",".join(sorted(changes) + (["items"] if new_items is not None else []))
    log_audit(db, "Order", order.OrderID, "EditOrder", details, user_id=owner_id)
    _commit_or_500(db, ORDERS_LOGGER, f"order {order.OrderNumber}")
    ORDERS_LOGGER.info("Order %s edited by user %s total=%s", order.OrderNumber, owner_id, order.TotalAmount)
    return serialize_order(_get_owned_order_or_404(db, order.OrderID, owner_id))


@app.post("/api/orders/{order_id}/sign")
def sign_order(
    order_id: int,
    request: Request,
    payload: SignRequest,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    owner_id = _require_owner_id(request, x_session_token)
    order = _get_owned_order_or_404(db, order_id, owner_id, lock=True)
    _run_transition(
        db,
        order,
        OrderAction.SIGN,
        user_id=owner_id,
        signature_image=payload.signatureImage,
        signer_ip=_get_client_ip(request),
        signer_user_agent=request.headers.get("user-agent"),
    )
    return serialize_order(order, include_signature=True)


@app.post("/api/orders/{order_id}/pickup")
def confirm_pickup(
    order_id: int,
    request: Request,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    owner_id = _require_owner_id(request, x_session_token)
    order = _get_owned_order_or_404(db, order_id, owner_id, lock=True)
    _run_transition(db, order, OrderAction.CONFIRM_PICKUP, user_id=owner_id)
    return serialize_order(order)


@app.post("/api/orders/{order_id}/return")
def confirm_return(
    order_id: int,
    request: Request,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    owner_id = _require_owner_id(request, x_session_token)
    order = _get_owned_order_or_404(db, order_id, owner_id, lock=True)
    _run_transition(db, order, OrderAction.CONFIRM_RETURN, user_id=owner_id)
    return serialize_order(order)


@app.post("/api/orders/{order_id}/cancel")
def cancel_order(
    order_id: int,
    request: Request,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    owner_id = _require_owner_id(request, x_session_token)
    order = _get_owned_order_or_404(db, order_id, owner_id, lock=True)
    _run_transition(db, order, OrderAction.CANCEL, user_id=owner_id)
    return serialize_order(order)


@app.get("/api/orders/{order_id}/contract")
def get_order_contract(
    order_id: int,
    request: Request,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    owner_id = _require_owner_id(request, x_session_token)
    _get_owned_order_or_404(db, order_id, owner_id)
    return get_contract_data(db, order_id=order_id)


@app.get("/api/orders/{order_id}/contract.html", response_class=HTMLResponse)
def get_order_contract_html(
    order_id: int,
    request: Request,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    owner_id = _require_owner_id(request, x_session_token)
    _get_owned_order_or_404(db, order_id, owner_id)
    return HTMLResponse(render_contract_html(get_contract_data(db, order_id=order_id)))


@app.get("/api/orders/{order_id}/whatsapp-link")
def get_order_whatsapp_link(
    order_id: int,
    request: Request,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    owner_id = _require_owner_id(request, x_session_token)
    order = _get_owned_order_or_404(db, order_id, owner_id)
    contract_url = build_contract_url(order)
    message = build_contract_message(order, contract_url)
    try:
        url = build_whatsapp_link(order.CustomerPhone, message)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return {"url": url, "message": message, "contractUrl": contract_url}


@app.get("/api/public/contracts/{token}")
def get_public_contract(token: str, db: Session = Depends(get_db)):
    try:
        return get_contract_data(db, token=token)
    except LookupError as exc:
        raise _http_error(exc) from exc


@app.post("/api/public/contracts/{token}/sign")
def sign_public_contract(token: str, request: Request, payload: PublicSignRequest, db: Session = Depends(get_db)):
    if not payload.agreed:
        raise HTTPException(status_code=400, detail="The contract terms must be accepted before signing.")
    if not (payload.signatureImage or "").startswith("data:image/"):
        raise HTTPException(status_code=400, detail="signatureImage must be an image data URL.")
    try:
        order = load_contract_order(db, token=token)
    except LookupError as exc:
        raise _http_error(exc) from exc

    _run_transition(
        db,
        order,
        OrderAction.SIGN,
        user_id=None,
        signature_image=payload.signatureImage,
        signer_ip=_get_client_ip(request),
        signer_user_agent=request.headers.get("user-agent"),
        source="public_link",
    )
    return get_contract_data(db, token=token)


@app.get("/api/dashboard/metrics")
def get_dashboard_metrics(
    request: Request,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    owner_id = _require_owner_id(request, x_session_token)
    return get_metrics(db, owner_id)


@app.get("/api/dashboard/pickups")
def get_dashboard_pickups(
    request: Request,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    owner_id = _require_owner_id(request, x_session_token)
    return pending_pickups(db, owner_id)


@app.get("/api/dashboard/returns")
def get_dashboard_returns(
    request: Request,
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    owner_id = _require_owner_id(request, x_session_token)
    return pending_returns(db, owner_id)


@app.get("/api/dashboard/revenue")
def get_dashboard_revenue(
    request: Request,
    months: int = Query(6, ge=1, le=24),
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    owner_id = _require_owner_id(request, x_session_token)
    return monthly_revenue(db, owner_id, months=months)


@app.get("/api/timeline")
def get_timeline(
    request: Request,
    start_date: date | None = Query(None, alias="startDate"),
    days: int = Query(15, ge=1, le=90),
    db: Session = Depends(get_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    owner_id = _require_owner_id(request, x_session_token)
    return build_timeline(db, owner_id, start=start_date, days=days)


def _get_active_session(request: Request, session_token: str | None) -> dict | None:
    session_from_cookie = request.session.get("user")
    if isinstance(session_from_cookie, dict):
        return dict(session_from_cookie)
    session_from_token = get_session(session_token)
    if session_from_token:
        request.session["user"] = dict(session_from_token)
        return dict(session_from_token)
    return None


def _require_session_or_401(request: Request, session_token: str | None) -> dict:
    session = _get_active_session(request, session_token)
    if not session:
        raise HTTPException(status_code=401, detail="Not logged in.")
    return session


def _require_owner_id(request: Request, session_token: str | None) -> int:
    session = _require_session_or_401(request, session_token)
    try:
        value = int(session.get("userID") or 0)
    except (TypeError, ValueError):
        value = 0
    if value <= 0:
        raise HTTPException(status_code=401, detail="Not logged in.")
    return value


def _get_owned_product_or_404(db: Session, product_id: int, owner_id: int, lock: bool = False) -> Product:
    stmt = select(Product).where(Product.ProductID == product_id).where(Product.OwnerID == owner_id)
    if lock:
        stmt = stmt.with_for_update()
    product = db.execute(stmt).scalars().first()
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


def _order_query():
    return select(Order).options(
        selectinload(Order.Items).selectinload(OrderItem.Product),
        selectinload(Order.Items).selectinload(OrderItem.Asset),
    )


def _get_owned_order_or_404(db: Session, order_id: int, owner_id: int, lock: bool = False) -> Order:
    stmt = _order_query().where(Order.OrderID == order_id).where(Order.OwnerID == owner_id)
    if lock:
        stmt = stmt.with_for_update()
    order = db.execute(stmt).scalars().first()
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


def _run_transition(
    db: Session,
    order: Order,
    action: OrderAction,
    *,
    user_id: int | None,
    signature_image: str | None = None,
    signer_ip: str | None = None,
    signer_user_agent: str | None = None,
    source: str = "dashboard",
) -> None:
    previous = order.Status
    now = datetime.now()
    try:
        ensure_stock_for_transition(db, order, action)
        target = apply_transition(
            order,
            action,
            now=now,
            signature_image=signature_image,
            signer_ip=signer_ip,
            signer_user_agent=signer_user_agent,
        )
    except (LookupError, ValueError) as exc:
        ORDERS_LOGGER.warning("Order %s rejected %s: %s", order.OrderNumber, action.value, exc)
        db.rollback()
        raise _http_error(exc) from exc

    order.UpdatedDate = now
    details = f"{previous} -> {target.value} via {source}"
    if action == OrderAction.SIGN:
        details = f"{details} ip={signer_ip}"
    log_audit(db, "Order", order.OrderID, ACTION_AUDIT_NAMES[action], details, user_id=user_id)
    _commit_or_500(db, ORDERS_LOGGER, f"order {order.OrderNumber}")
    ORDERS_LOGGER.info("Order %s moved %s -> %s via %s", order.OrderNumber, previous, target.value, source)


def _serialize_profile(profile: Profile | None) -> dict:
    if not profile:
        return {field: None for field in PROFILE_FIELD_MAP} | {"companyConfigured": False}
    payload = {field: getattr(profile, column) for field, column in PROFILE_FIELD_MAP.items()}
    payload["companyConfigured"] = is_company_configured(profile)
    return payload
