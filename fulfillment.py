"""
Order status transitions.

Orders move forward along pending -> processing -> shipped -> delivered and
may be cancelled from any state that is not terminal. Every change appends a
status history entry in the same write that changes ``status``.
"""
import logging
from typing import Any, Dict, List, Optional, Tuple

from pydantic import Field
from pymongo import ReturnDocument
from pymongo.database import Database

from auth import AuthUser
from database import now_utc, oid
from errors import AuthorizationError, ConflictError, NotFoundError, ValidationFailed, field_error
from schemas import ORDER_STATUSES, ApiModel

logger = logging.getLogger(__name__)

FLOW = ("pending", "processing", "shipped", "delivered")
TERMINAL = ("delivered", "cancelled")
CUSTOMER_CANCELLABLE = ("pending", "processing")


class StatusUpdate(ApiModel):
    status: str
    note: Optional[str] = Field(None, max_length=500)
    tracking_number: Optional[str] = Field(None, max_length=100)


def allowed_targets(current: str) -> List[str]:
    if current in TERMINAL:
        return []
    return list(FLOW[FLOW.index(current):]) + ["cancelled"]


def _restock(db: Database, items: List[Dict[str, Any]]) -> None:
    for item in items:
        _id = oid(item.get("product_id"))
        if not _id:
            continue
        db["product"].update_one(
            {"_id": _id},
            {"$inc": {f"stock_by_size.{item['size']}": item["quantity"]}, "$set": {"updated_at": now_utc()}},
        )


def change_order_status(
    db: Database,
    order_id: str,
    status: str,
    note: Optional[str] = None,
    tracking_number: Optional[str] = None,
    actor: Optional[AuthUser] = None,
) -> Tuple[Dict[str, Any], str]:
    """Apply a status change and return the updated order with the status it replaced."""
    if status not in ORDER_STATUSES:
        raise ValidationFailed(
            [field_error("status", f"Invalid status. Allowed values: {', '.join(ORDER_STATUSES)}", status)]
        )
    _id = oid(order_id)
    if not _id:
        raise NotFoundError("Order not found")
    order = db["order"].find_one({"_id": _id}, {"status": 1})
    if not order:
        raise NotFoundError("Order not found")

    current = order["status"]
    targets = allowed_targets(current)
    if status not in targets:
        raise ConflictError(
            f"Cannot change status from {current} to {status}. Allowed: {', '.join(targets) or 'none'}"
        )

    now = now_utc()
    changes: Dict[str, Any] = {"status": status, "updated_at": now}
    if note:
        changes["notes"] = note
    if tracking_number is not None:
        changes["tracking_number"] = tracking_number
    if status == "delivered":
        changes["delivered_at"] = now
    if status == "cancelled":
        changes["cancelled_at"] = now
    entry = {
        "status": status,
        "note": note or f"Status updated from {current} to {status}",
        "timestamp": now,
        "updated_by": actor.id if actor else None,
    }

    # keyed on the status we read so a concurrent change is not overwritten
    updated = db["order"].find_one_and_update(
        {"_id": _id, "status": current},
        {"$set": changes, "$push": {"status_history": entry}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise ConflictError("Order status changed while updating, reload and try again")

    if status == "cancelled":
        _restock(db, updated.get("items", []))
    logger.info(
        "Order %s status %s -> %s by %s",
        updated["order_number"],
        current,
        status,
        actor.id if actor else "system",
    )
    return updated, current


def update_order_status(
    db: Database,
    order_id: str,
    status: str,
    note: Optional[str] = None,
    tracking_number: Optional[str] = None,
    actor: Optional[AuthUser] = None,
) -> Dict[str, Any]:
    return change_order_status(db, order_id, status, note, tracking_number, actor)[0]


def cancel_order(db: Database, order_id: str, actor: AuthUser, reason: Optional[str] = None) -> Dict[str, Any]:
    """Cancel on behalf of a shopper (own orders, before shipping) or an admin."""
    _id = oid(order_id)
    order = db["order"].find_one({"_id": _id}, {"user_id": 1, "status": 1}) if _id else None
    if not order:
        raise NotFoundError("Order not found")
    if not actor.is_admin:
        if order.get("user_id") != actor.id:
            raise AuthorizationError("Not authorized to cancel this order")
        if order["status"] not in CUSTOMER_CANCELLABLE:
            raise ConflictError(f"Order cannot be cancelled once it is {order['status']}")
        reason = reason or "Cancelled by customer"
    return update_order_status(db, order_id, "cancelled", note=reason, actor=actor)
