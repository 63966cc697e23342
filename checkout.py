"""
Checkout: turning a cart payload into an order.

``validate_checkout`` normalises the raw payload into a ``CheckoutRequest``
draft and reports every problem it finds at once. ``place_order`` then
reserves stock line by line with conditional decrements, inserts the order
under a freshly drawn order number, and gives the stock back if anything
after the first decrement fails.
"""
import logging
import re
from typing import Annotated, Any, Dict, List, Optional, Tuple

from bson import ObjectId
from pydantic import EmailStr, Field, StringConstraints, ValidationError, field_validator, model_validator
from pydantic_core import PydanticCustomError
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from auth import AuthUser
from database import now_utc, oid, to_str_id
from errors import (
    InsufficientStockError,
    NotFoundError,
    PersistenceError,
    ValidationFailed,
    field_error,
    pydantic_errors,
)
from schemas import OBJECT_ID_PATTERN, ApiModel, OrderOut, PaymentMethod
from settings import get_settings

logger = logging.getLogger(__name__)

AMOUNT_TOLERANCE = 0.01

Text = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]

# (product id, size, quantity) for each line already taken out of stock
Reservation = Tuple[str, str, int]


class CheckoutCustomer(ApiModel):
    name: Text
    email: EmailStr
    phone: Optional[str] = None


class CheckoutAddress(ApiModel):
    full_name: Text
    address: Text
    city: Text
    state: Text
    zip_code: Text
    phone: Text
    country: Optional[str] = None


class CheckoutItem(ApiModel):
    product: str
    name: Text
    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    size: Text
    color: Text
    image: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def pick_product_ref(cls, data: Any) -> Any:
        # "product" wins; "productId" is accepted from older clients
        if isinstance(data, dict) and not data.get("product") and data.get("productId"):
            data = {**data, "product": data["productId"]}
        return data

    @field_validator("product")
    @classmethod
    def check_product_ref(cls, v: str) -> str:
        if not re.fullmatch(OBJECT_ID_PATTERN, v):
            raise PydanticCustomError("product_ref", "Valid product ID is required")
        return v.lower()

    @field_validator("size")
    @classmethod
    def check_size(cls, v: str) -> str:
        if "." in v or v.startswith("$"):
            raise PydanticCustomError("size", "Invalid size")
        return v


class CheckoutRequest(ApiModel):
    customer_info: CheckoutCustomer
    items: List[CheckoutItem] = Field(None, validate_default=True)
    shipping_address: CheckoutAddress
    billing_address: Optional[CheckoutAddress] = None
    payment_method: PaymentMethod
    subtotal: float = Field(..., ge=0)
    shipping: float = Field(0, ge=0)
    tax: float = Field(0, ge=0)
    discount: float = Field(0, ge=0)
    total: float = Field(..., ge=0)
    notes: Optional[str] = None

    @field_validator("items", mode="before")
    @classmethod
    def require_items(cls, v: Any) -> Any:
        if not isinstance(v, list) or not v:
            raise PydanticCustomError("items_required", "items array required, at least 1 item")
        return v

    @field_validator("payment_method", mode="before")
    @classmethod
    def normalize_payment_method(cls, v: Any) -> Any:
        if isinstance(v, str) and v.strip().upper() in ("COD", "CARD"):
            return v.strip().upper()
        raise PydanticCustomError("payment_method", "paymentMethod must be one of: COD, CARD")


def _differs(a: float, b: float) -> bool:
    return abs(a - b) > AMOUNT_TOLERANCE + 1e-9


def validate_checkout(payload: Any, user: Optional[AuthUser] = None) -> CheckoutRequest:
    """Validate and normalise a checkout payload.

    Signed-in shoppers may omit ``customerInfo``; their account name and
    email are used instead. Raises ``ValidationFailed`` listing every
    violation.
    """
    if not isinstance(payload, dict):
        raise ValidationFailed([field_error("body", "Request body must be a JSON object", None)])

    data = dict(payload)
    if user is not None and not (data.get("customerInfo") or data.get("customer_info")):
        data["customerInfo"] = {"name": user.name, "email": user.email}

    try:
        draft = CheckoutRequest.model_validate(data)
    except ValidationError as e:
        raise ValidationFailed(pydantic_errors(e.errors(include_url=False)))

    errors = []
    items_subtotal = round(sum(i.price * i.quantity for i in draft.items), 2)
    if _differs(items_subtotal, draft.subtotal):
        errors.append(field_error("subtotal", f"subtotal must equal the sum of item prices ({items_subtotal:.2f})", draft.subtotal))
    expected_total = round(draft.subtotal + draft.shipping + draft.tax - draft.discount, 2)
    if _differs(expected_total, draft.total):
        errors.append(field_error("total", f"total must equal subtotal + shipping + tax - discount ({expected_total:.2f})", draft.total))
    if errors:
        raise ValidationFailed(errors)
    return draft


# -----------------------------
# Stock
# -----------------------------

def _stock_field(size: str) -> str:
    return f"stock_by_size.{size}"


def release_stock(db: Database, reserved: List[Reservation]) -> None:
    for product_id, size, quantity in reversed(reserved):
        try:
            db["product"].update_one(
                {"_id": ObjectId(product_id)},
                {"$inc": {_stock_field(size): quantity}, "$set": {"updated_at": now_utc()}},
            )
        except PyMongoError:
            logger.exception("Failed to restore %s x size %s for product %s", quantity, size, product_id)


def _stock_failure(db: Database, index: int, item: CheckoutItem) -> Exception:
    product = db["product"].find_one({"_id": ObjectId(item.product)}, {"name": 1, "is_active": 1, "stock_by_size": 1})
    label = f"item {index + 1}: {item.name}"
    if not product:
        return NotFoundError(f"Product not found for {label}")

    name = product.get("name") or item.name
    stock = product.get("stock_by_size") or {}
    available = int(stock.get(item.size, 0)) if product.get("is_active", True) else 0
    detail = {
        "index": index,
        "productId": item.product,
        "size": item.size,
        "available": available,
        "requested": item.quantity,
    }
    if not product.get("is_active", True):
        return InsufficientStockError(f"Product is not available: {name}", detail)
    if item.size not in stock:
        return InsufficientStockError(f"Size {item.size} is not available for {name}", detail)
    return InsufficientStockError(
        f"Insufficient stock for {name} (size {item.size}). Available: {available}, Requested: {item.quantity}",
        detail,
    )


def reserve_stock(db: Database, items: List[CheckoutItem]) -> List[Reservation]:
    """Take every line out of stock or none of them.

    Each decrement only applies while the size still has enough units, so two
    orders racing for the last unit cannot both win.
    """
    reserved: List[Reservation] = []
    for index, item in enumerate(items):
        field = _stock_field(item.size)
        taken = db["product"].find_one_and_update(
            {"_id": ObjectId(item.product), "is_active": True, field: {"$gte": item.quantity}},
            {"$inc": {field: -item.quantity}, "$set": {"updated_at": now_utc()}},
            projection={"_id": 1},
        )
        if taken is None:
            error = _stock_failure(db, index, item)
            logger.info("Stock reservation failed on line %d (%s): %s", index + 1, item.product, error.detail)
            release_stock(db, reserved)
            raise error
        reserved.append((item.product, item.size, item.quantity))
    return reserved


# -----------------------------
# Orders
# -----------------------------

def next_order_number(db: Database) -> str:
    day = now_utc().strftime("%Y%m%d")
    counter = db["counter"].find_one_and_update(
        {"_id": f"order:{day}"},
        {"$inc": {"seq": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return f"ORD-{day}-{counter['seq']:04d}"


def build_order_document(draft: CheckoutRequest, user: Optional[AuthUser] = None) -> Dict[str, Any]:
    settings = get_settings()
    now = now_utc()
    shipping_address = draft.shipping_address.model_dump()
    return {
        "user_id": user.id if user else None,
        "customer_info": draft.customer_info.model_dump(),
        "items": [
            {
                "product_id": i.product,
                "name": i.name,
                "price": i.price,
                "quantity": i.quantity,
                "size": i.size,
                "color": i.color,
                "image": i.image,
            }
            for i in draft.items
        ],
        "shipping_address": shipping_address,
        "billing_address": draft.billing_address.model_dump() if draft.billing_address else shipping_address,
        "payment_method": draft.payment_method,
        # card payments are confirmed by the Stripe webhook, never by the client
        "payment_status": "pending",
        "payment_intent_id": None,
        "currency": settings.CURRENCY,
        "subtotal": round(draft.subtotal, 2),
        "shipping": round(draft.shipping, 2),
        "tax": round(draft.tax, 2),
        "discount": round(draft.discount, 2),
        "total": round(draft.total, 2),
        "status": "pending",
        "status_history": [{"status": "pending", "note": "Order created", "timestamp": now, "updated_by": None}],
        "notes": draft.notes,
        "tracking_number": None,
        "delivered_at": None,
        "cancelled_at": None,
        "created_at": now,
        "updated_at": now,
    }


def insert_order(db: Database, doc: Dict[str, Any]) -> Dict[str, Any]:
    attempts = get_settings().ORDER_NUMBER_ATTEMPTS
    for attempt in range(1, attempts + 1):
        doc.pop("_id", None)
        doc["order_number"] = next_order_number(db)
        try:
            db["order"].insert_one(doc)
            return doc
        except DuplicateKeyError:
            logger.warning("Order number %s already taken (attempt %d/%d)", doc["order_number"], attempt, attempts)
        except PyMongoError as e:
            logger.exception("Could not insert order")
            raise PersistenceError("Server error while creating order") from e
    raise PersistenceError("Server error while creating order")


def place_order(db: Database, draft: CheckoutRequest, user: Optional[AuthUser] = None) -> Dict[str, Any]:
    reserved = reserve_stock(db, draft.items)
    try:
        order = insert_order(db, build_order_document(draft, user))
    except Exception:
        logger.warning("Rolling back %d stock reservation(s)", len(reserved))
        release_stock(db, reserved)
        raise

    logger.info(
        "Order %s created for %s: %d line(s), total %.2f, %s",
        order["order_number"],
        user.id if user else "guest",
        len(order["items"]),
        order["total"],
        order["payment_method"],
    )

    if user is not None:
        try:
            db["user"].update_one(
                {"_id": oid(user.id)},
                {
                    "$inc": {"total_orders": 1, "total_spent": order["total"]},
                    "$set": {"cart": [], "updated_at": now_utc()},
                },
            )
        except PyMongoError:
            # the order stands; only the account counters are stale
            logger.exception("Order %s placed but account %s was not updated", order["order_number"], user.id)
    return order


def serialize_order(doc: Dict[str, Any]) -> Dict[str, Any]:
    d = to_str_id(doc)
    d["total_items"] = sum(i.get("quantity", 0) for i in d.get("items", []))
    return OrderOut.model_validate(d).model_dump(by_alias=True, mode="json")
