import logging
import math
import re
from typing import Any, Dict, Optional

from pymongo import ASCENDING, DESCENDING
from pymongo.database import Database

from catalog import primary_image
from checkout import serialize_order
from database import oid

logger = logging.getLogger(__name__)

PLACEHOLDER_IMAGE = "/placeholder-image.jpg"

SORT_FIELDS = {
    "createdAt": "created_at",
    "total": "total",
    "orderNumber": "order_number",
    "status": "status",
}


def build_filter(status: Optional[str] = None, search: Optional[str] = None) -> Dict[str, Any]:
    filt: Dict[str, Any] = {}
    if status:
        filt["status"] = status
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        filt["$or"] = [
            {"order_number": pattern},
            {"customer_info.name": pattern},
            {"customer_info.email": pattern},
        ]
    return filt


def _lookup(db: Database, collection: str, ids, projection: Dict[str, int]) -> Dict[str, Dict[str, Any]]:
    object_ids = [o for o in {oid(i) for i in ids if i} if o]
    if not object_ids:
        return {}
    return {str(d["_id"]): d for d in db[collection].find({"_id": {"$in": object_ids}}, projection)}


def resolve_customer(order: Dict[str, Any], users: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
    info = order.get("customer_info") or {}
    user_id = order.get("user_id")
    if not user_id:
        return {"name": info.get("name") or "Guest Customer", "email": info.get("email") or "No email", "type": "guest"}
    user = users.get(user_id) or {}
    return {
        "name": user.get("name") or info.get("name"),
        "email": user.get("email") or info.get("email"),
        "type": "registered",
    }


def product_details(item: Dict[str, Any], product: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not product:
        return {
            "name": item.get("name") or "Unknown Product",
            "image": item.get("image") or PLACEHOLDER_IMAGE,
            "category": "Unknown",
            "section": None,
        }
    return {
        "name": product.get("name") or item.get("name"),
        "image": primary_image(product) or item.get("image") or PLACEHOLDER_IMAGE,
        "category": product.get("category") or "Unknown",
        "section": product.get("section"),
    }


def enrich_order(
    order: Dict[str, Any],
    products: Dict[str, Dict[str, Any]],
    users: Dict[str, Dict[str, Any]],
) -> Dict[str, Any]:
    out = serialize_order(order)
    items = [
        {**item_out, "productDetails": product_details(raw, products.get(raw.get("product_id")))}
        for item_out, raw in zip(out["items"], order.get("items", []))
    ]
    out["customer"] = resolve_customer(order, users)
    out["items"] = items
    out["itemsSummary"] = {
        "count": out["totalItems"],
        "hasMultiple": len(items) > 1,
        "additionalCount": max(len(items) - 1, 0),
        "firstItem": items[0] if items else None,
    }
    return out


def list_enriched_orders(
    db: Database,
    page: int = 1,
    limit: int = 10,
    status: Optional[str] = None,
    search: Optional[str] = None,
    sort_by: str = "createdAt",
    sort_order: str = "desc",
) -> Dict[str, Any]:
    filt = build_filter(status, search)
    direction = DESCENDING if sort_order == "desc" else ASCENDING
    cursor = (
        db["order"]
        .find(filt)
        .sort(SORT_FIELDS.get(sort_by, "created_at"), direction)
        .skip((page - 1) * limit)
        .limit(limit)
    )
    orders = list(cursor)

    products = _lookup(
        db,
        "product",
        [i.get("product_id") for o in orders for i in o.get("items", [])],
        {"name": 1, "images": 1, "category": 1, "section": 1},
    )
    users = _lookup(db, "user", [o.get("user_id") for o in orders], {"name": 1, "email": 1})

    total = db["order"].count_documents(filt)
    total_pages = math.ceil(total / limit) if total else 0
    logger.debug("Admin orders page %d/%d (%d orders)", page, total_pages, total)
    return {
        "orders": [enrich_order(o, products, users) for o in orders],
        "pagination": {
            "currentPage": page,
            "totalPages": total_pages,
            "totalOrders": total,
            "hasPrevPage": page > 1,
            "hasNextPage": page < total_pages,
        },
    }


def order_stats(db: Database) -> Dict[str, Any]:
    pipeline = [
        {"$group": {"_id": "$status", "count": {"$sum": 1}, "totalAmount": {"$sum": "$total"}}},
    ]
    breakdown = [
        {"status": row["_id"], "count": row["count"], "totalAmount": round(row["totalAmount"], 2)}
        for row in db["order"].aggregate(pipeline)
    ]
    breakdown.sort(key=lambda row: row["status"] or "")

    # revenue only counts orders that reached the customer
    revenue = sum(row["totalAmount"] for row in breakdown if row["status"] == "delivered")

    recent = list(
        db["order"]
        .find({}, {"order_number": 1, "customer_info": 1, "user_id": 1, "total": 1, "status": 1, "created_at": 1})
        .sort("created_at", DESCENDING)
        .limit(5)
    )
    users = _lookup(db, "user", [o.get("user_id") for o in recent], {"name": 1, "email": 1})
    return {
        "totalOrders": db["order"].count_documents({}),
        "totalRevenue": round(revenue, 2),
        "statusBreakdown": breakdown,
        "recentOrders": [
            {
                "id": str(o["_id"]),
                "orderNumber": o["order_number"],
                "total": o["total"],
                "status": o["status"],
                "createdAt": o["created_at"].isoformat(),
                "customer": resolve_customer(o, users),
            }
            for o in recent
        ],
    }
