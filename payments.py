import logging
from typing import Any, Dict, Optional

from fastapi import HTTPException
from pydantic import EmailStr
from pymongo import ReturnDocument
from pymongo.database import Database

from auth import AuthUser
from database import now_utc, oid
from errors import AuthorizationError, ConflictError, NotFoundError
from schemas import ApiModel
from settings import get_settings

logger = logging.getLogger(__name__)


class PaymentIntentRequest(ApiModel):
    order_id: str
    email: Optional[EmailStr] = None


def _authorize(order: Dict[str, Any], user: Optional[AuthUser], email: Optional[str]) -> None:
    if user is not None and (user.is_admin or order.get("user_id") == user.id):
        return
    if order.get("user_id") is None and email and email.lower() == order["customer_info"]["email"].lower():
        return
    raise AuthorizationError("Not authorized to pay for this order")


def create_payment_intent(db: Database, body: PaymentIntentRequest, user: Optional[AuthUser]) -> Dict[str, Any]:
    _id = oid(body.order_id)
    order = db["order"].find_one({"_id": _id}) if _id else None
    if not order:
        raise NotFoundError("Order not found")
    _authorize(order, user, body.email)
    if order["payment_method"] != "CARD":
        raise ConflictError("Order is not a card payment")
    if order.get("payment_status") == "paid" or order["status"] == "cancelled":
        raise ConflictError(f"Order cannot be paid (payment {order.get('payment_status')}, status {order['status']})")

    settings = get_settings()
    # amounts go to Stripe in minor units, computed from the stored total
    amount = int(round(order["total"] * 100))
    currency = order.get("currency", settings.CURRENCY).lower()

    if not settings.STRIPE_SECRET_KEY:
        # Mock if Stripe not configured
        return {"clientSecret": "mock_client_secret", "paymentIntentId": None, "amount": amount, "currency": currency}

    try:
        import stripe
        stripe.api_key = settings.STRIPE_SECRET_KEY
        intent = stripe.PaymentIntent.create(
            amount=amount,
            currency=currency,
            payment_method_types=["card"],
            metadata={"orderId": str(order["_id"]), "orderNumber": order["order_number"]},
        )
    except Exception as e:
        logger.exception("Stripe payment intent failed for order %s", order["order_number"])
        raise HTTPException(status_code=500, detail=f"Stripe error: {str(e)[:100]}")

    db["order"].update_one({"_id": order["_id"]}, {"$set": {"payment_intent_id": intent.id, "updated_at": now_utc()}})
    return {"clientSecret": intent.client_secret, "paymentIntentId": intent.id, "amount": amount, "currency": currency}


# Stripe event type -> (payment status, history note)
PAYMENT_EVENTS = {
    "payment_intent.succeeded": ("paid", "Payment confirmed via Stripe"),
    "payment_intent.payment_failed": ("failed", "Payment failed via Stripe"),
}


def parse_stripe_event(payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
    settings = get_settings()
    if not settings.STRIPE_WEBHOOK_SECRET:
        raise HTTPException(status_code=503, detail="Stripe webhook is not configured")

    import stripe
    try:
        return stripe.Webhook.construct_event(payload, signature or "", settings.STRIPE_WEBHOOK_SECRET)
    except (ValueError, stripe.SignatureVerificationError) as e:
        logger.warning("Rejected Stripe webhook: %s", e)
        raise HTTPException(status_code=400, detail="Invalid Stripe webhook payload or signature")


def apply_stripe_event(db: Database, event: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Record the outcome of a payment intent on its order.

    Returns the updated order, or None when the event is not about a known
    unpaid order.
    """
    handled = PAYMENT_EVENTS.get(event["type"])
    if handled is None:
        logger.info("Ignoring Stripe event %s", event["type"])
        return None
    payment_status, note = handled
    intent = event["data"]["object"]

    order = db["order"].find_one({"payment_intent_id": intent["id"]})
    if not order:
        logger.warning("Stripe event %s for unknown payment intent %s", event["type"], intent["id"])
        return None
    if payment_status == "paid":
        expected = int(round(order["total"] * 100))
        received = intent["amount_received"]
        if received != expected:
            logger.error(
                "Payment intent %s received %s but order %s expects %s",
                intent["id"], received, order["order_number"], expected,
            )
            return None

    now = now_utc()
    updated = db["order"].find_one_and_update(
        {"_id": order["_id"], "payment_status": {"$ne": "paid"}},
        {
            "$set": {"payment_status": payment_status, "updated_at": now},
            "$push": {"status_history": {"status": order["status"], "note": note, "timestamp": now, "updated_by": None}},
        },
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        logger.info("Order %s already paid, ignoring %s", order["order_number"], event["type"])
        return None
    logger.info("Order %s payment %s", updated["order_number"], payment_status)
    return updated
