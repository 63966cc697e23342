"""
Server-side cart for signed-in shoppers.

Lines live on the user document. Prices are never stored in the cart; they
are read from the catalog each time the cart is shown.
"""
import logging
from typing import Any, Dict, List

from bson import ObjectId
from pydantic import Field
from pymongo.database import Database

from auth import AuthUser
from catalog import get_product, primary_image
from database import now_utc, oid
from errors import InsufficientStockError, NotFoundError
from schemas import ApiModel
from settings import get_settings

logger = logging.getLogger(__name__)


class CartItemIn(ApiModel):
    product_id: str
    size: str = Field(..., min_length=1)
    color: str = Field(..., min_length=1)
    quantity: int = Field(1, ge=1, le=10)


class CartQuantity(ApiModel):
    quantity: int = Field(..., ge=1, le=10)


def _load_cart(db: Database, user: AuthUser) -> List[Dict[str, Any]]:
    doc = db["user"].find_one({"_id": oid(user.id)}, {"cart": 1})
    if not doc:
        raise NotFoundError("User not found")
    return doc.get("cart") or []


def _save_cart(db: Database, user: AuthUser, lines: List[Dict[str, Any]]) -> None:
    db["user"].update_one({"_id": oid(user.id)}, {"$set": {"cart": lines, "updated_at": now_utc()}})


def _check_stock(product: Dict[str, Any], size: str, quantity: int) -> None:
    stock = product.get("stock_by_size") or {}
    if size not in stock:
        raise InsufficientStockError(f"Size {size} is not available for {product.get('name')}")
    if quantity > stock[size]:
        raise InsufficientStockError(
            f"Only {stock[size]} items available in stock",
            {"productId": str(product["_id"]), "size": size, "available": stock[size], "requested": quantity},
        )


def cart_summary(subtotal: float, item_count: int) -> Dict[str, Any]:
    settings = get_settings()
    tax = subtotal * settings.CART_TAX_RATE
    if not item_count or subtotal > settings.FREE_SHIPPING_THRESHOLD:
        shipping = 0.0
    else:
        shipping = settings.FLAT_SHIPPING
    return {
        "itemCount": item_count,
        "subtotal": round(subtotal, 2),
        "tax": round(tax, 2),
        "shipping": round(shipping, 2),
        "total": round(subtotal + tax + shipping, 2),
        "currency": settings.CURRENCY,
    }


def get_cart(db: Database, user: AuthUser) -> Dict[str, Any]:
    lines = _load_cart(db, user)
    ids = [oid(l["product_id"]) for l in lines]
    products = {
        str(p["_id"]): p
        for p in db["product"].find({"_id": {"$in": [i for i in ids if i]}, "is_active": True})
    }

    kept, items = [], []
    subtotal = 0.0
    for line in lines:
        product = products.get(line["product_id"])
        if not product:
            continue
        kept.append(line)
        price = float(product.get("price", 0))
        line_total = price * line["quantity"]
        subtotal += line_total
        items.append({
            "id": line["id"],
            "productId": line["product_id"],
            "name": product.get("name"),
            "image": primary_image(product),
            "size": line["size"],
            "color": line["color"],
            "quantity": line["quantity"],
            "price": price,
            "total": round(line_total, 2),
        })

    if len(kept) != len(lines):
        logger.info("Pruned %d unavailable line(s) from cart of %s", len(lines) - len(kept), user.id)
        _save_cart(db, user, kept)

    return {"items": items, "summary": cart_summary(subtotal, len(items))}


def add_to_cart(db: Database, user: AuthUser, payload: CartItemIn) -> Dict[str, Any]:
    product = get_product(db, payload.product_id)
    lines = _load_cart(db, user)
    for line in lines:
        if (line["product_id"], line["size"], line["color"]) == (payload.product_id, payload.size, payload.color):
            quantity = line["quantity"] + payload.quantity
            _check_stock(product, payload.size, quantity)
            line["quantity"] = quantity
            break
    else:
        _check_stock(product, payload.size, payload.quantity)
        lines.append({
            "id": str(ObjectId()),
            "product_id": payload.product_id,
            "size": payload.size,
            "color": payload.color,
            "quantity": payload.quantity,
            "added_at": now_utc(),
        })
    _save_cart(db, user, lines)
    return get_cart(db, user)


def update_cart_line(db: Database, user: AuthUser, line_id: str, quantity: int) -> Dict[str, Any]:
    lines = _load_cart(db, user)
    line = next((l for l in lines if l["id"] == line_id), None)
    if not line:
        raise NotFoundError("Cart item not found")
    product = get_product(db, line["product_id"])
    _check_stock(product, line["size"], quantity)
    line["quantity"] = quantity
    _save_cart(db, user, lines)
    return get_cart(db, user)


def remove_cart_line(db: Database, user: AuthUser, line_id: str) -> Dict[str, Any]:
    lines = _load_cart(db, user)
    remaining = [l for l in lines if l["id"] != line_id]
    if len(remaining) == len(lines):
        raise NotFoundError("Cart item not found")
    _save_cart(db, user, remaining)
    return get_cart(db, user)


def clear_cart(db: Database, user: AuthUser) -> Dict[str, Any]:
    _save_cart(db, user, [])
    return get_cart(db, user)
