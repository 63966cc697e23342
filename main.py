import logging
import math
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, Literal, Optional

from fastapi import Body, Depends, FastAPI, Header, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, EmailStr, Field
from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import PyMongoError
from starlette.concurrency import run_in_threadpool

import accounts
import admin_orders
import cart
import catalog
import reviews
from accounts import user_out
from auth import (
    TOKEN_COOKIE,
    AuthUser,
    get_current_user,
    get_optional_user,
    require_admin,
    token_for_user,
    verify_password,
)
from checkout import place_order, serialize_order, validate_checkout
from database import ensure_indexes, get_db, now_utc, oid
from errors import AuthenticationError, AuthorizationError, NotFoundError, PersistenceError, install_error_handlers
from fulfillment import StatusUpdate, cancel_order, change_order_status
from payments import PaymentIntentRequest, apply_stripe_event, create_payment_intent, parse_stripe_event
from schemas import ApiModel, OrderStatus, Product
from settings import get_settings

settings = get_settings()

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    db = get_db()
    ensure_indexes(db)
    accounts.seed_admin(db)
    yield


app = FastAPI(title="Storefront Order API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

install_error_handlers(app)


def ok(data: Any = None, message: Optional[str] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": True}
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = data
    return body


def set_auth_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        TOKEN_COOKIE,
        token,
        max_age=settings.JWT_EXPIRE_MINUTES * 60,
        httponly=True,
        secure=settings.COOKIE_SECURE,
        samesite="lax",
    )


# --------------------- Models ---------------------

class RegisterRequest(BaseModel):
    name: str = Field(min_length=2, max_length=100)
    email: EmailStr
    password: str = Field(min_length=6)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1)


class UserStatusUpdate(ApiModel):
    is_active: bool


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class ReviewApproval(ApiModel):
    is_approved: bool


# --------------------- Routes ---------------------

@app.get("/")
def root():
    return {"message": "Storefront Order API is running", "db": settings.DATABASE_NAME}


@app.get("/health")
def health(db: Database = Depends(get_db)):
    try:
        db.command("ping")
    except PyMongoError:
        logger.exception("Health check could not reach the database")
        raise PersistenceError("Database unavailable")
    return {"status": "ok"}


# Auth
@app.post("/auth/register", status_code=201)
def register(req: RegisterRequest, response: Response, db: Database = Depends(get_db)):
    user_doc = accounts.create_user(db, req.name, req.email, req.password, last_login=now_utc())
    token = token_for_user(user_doc)
    set_auth_cookie(response, token)
    logger.info("Registered user %s", user_doc["_id"])
    return ok({"token": token, "user": user_out(user_doc)}, "User registered successfully")


@app.post("/auth/login")
def login(req: LoginRequest, response: Response, db: Database = Depends(get_db)):
    user = db["user"].find_one({"email": req.email.lower()})
    if not user or not verify_password(req.password, user.get("password_hash", "")):
        logger.info("Failed login for %s", req.email)
        raise AuthenticationError("Invalid email or password")
    if not user.get("is_active", True):
        raise AuthenticationError("Account is deactivated. Please contact support.")
    user = db["user"].find_one_and_update(
        {"_id": user["_id"]},
        {"$set": {"last_login": now_utc()}},
        return_document=ReturnDocument.AFTER,
    )
    token = token_for_user(user)
    set_auth_cookie(response, token)
    return ok({"token": token, "user": user_out(user)}, "Login successful")


@app.post("/auth/logout")
def logout(response: Response):
    response.delete_cookie(TOKEN_COOKIE)
    return ok(message="Logged out")


@app.get("/auth/me")
def me(user: AuthUser = Depends(get_current_user), db: Database = Depends(get_db)):
    doc = db["user"].find_one({"_id": oid(user.id)}, {"password_hash": 0})
    return ok({"user": user_out(doc)})


# Profile
@app.get("/users/profile")
def get_profile(user: AuthUser = Depends(get_current_user), db: Database = Depends(get_db)):
    return ok({"user": user_out(accounts.get_profile(db, user))})


@app.put("/users/profile")
def update_profile(
    body: accounts.ProfileUpdate,
    user: AuthUser = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    return ok({"user": user_out(accounts.update_profile(db, user, body))}, "Profile updated successfully")


# Products
@app.get("/products")
def list_products(
    category: Optional[str] = None,
    section: Optional[Literal["men", "women"]] = None,
    q: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Database = Depends(get_db),
):
    return ok(catalog.list_products(db, category, section, q, page, limit))


@app.get("/products/{product_id}")
def get_product(product_id: str, db: Database = Depends(get_db)):
    return ok({"product": catalog.product_out(catalog.get_product(db, product_id))})


@app.post("/admin/products", status_code=201, dependencies=[Depends(require_admin)])
def create_product(body: Product, db: Database = Depends(get_db)):
    return ok({"product": catalog.product_out(catalog.create_product(db, body))}, "Product created")


@app.put("/admin/products/{product_id}", dependencies=[Depends(require_admin)])
def update_product(product_id: str, body: catalog.ProductUpdate, db: Database = Depends(get_db)):
    return ok({"product": catalog.product_out(catalog.update_product(db, product_id, body))}, "Product updated")


@app.delete("/admin/products/{product_id}", dependencies=[Depends(require_admin)])
def deactivate_product(product_id: str, db: Database = Depends(get_db)):
    return ok({"product": catalog.product_out(catalog.deactivate_product(db, product_id))}, "Product deactivated")


# Reviews
@app.post("/reviews", status_code=201)
def add_review(body: reviews.ReviewIn, user: AuthUser = Depends(get_current_user), db: Database = Depends(get_db)):
    return ok({"review": reviews.review_out(reviews.add_review(db, user, body))}, "Review added successfully")


@app.get("/reviews/{product_id}")
def product_reviews(
    product_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=50),
    sort_by: Literal["newest", "oldest", "highest", "lowest", "helpful"] = Query("newest", alias="sortBy"),
    rating: Optional[int] = Query(None, ge=1, le=5),
    db: Database = Depends(get_db),
):
    return ok(reviews.list_reviews(db, product_id, page, limit, sort_by, rating))


@app.delete("/reviews/{review_id}")
def delete_review(review_id: str, user: AuthUser = Depends(get_current_user), db: Database = Depends(get_db)):
    reviews.delete_review(db, review_id, user)
    return ok(message="Review deleted successfully")


@app.put("/reviews/{review_id}/helpful", dependencies=[Depends(get_current_user)])
def mark_review_helpful(review_id: str, db: Database = Depends(get_db)):
    return ok({"helpfulCount": reviews.mark_helpful(db, review_id)}, "Review marked as helpful")


# Cart
@app.get("/cart")
def get_cart(user: AuthUser = Depends(get_current_user), db: Database = Depends(get_db)):
    return ok(cart.get_cart(db, user))


@app.post("/cart/items")
def add_cart_item(body: cart.CartItemIn, user: AuthUser = Depends(get_current_user), db: Database = Depends(get_db)):
    return ok(cart.add_to_cart(db, user, body), "Item added to cart")


@app.put("/cart/items/{line_id}")
def update_cart_item(
    line_id: str,
    body: cart.CartQuantity,
    user: AuthUser = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    return ok(cart.update_cart_line(db, user, line_id, body.quantity), "Cart updated")


@app.delete("/cart/items/{line_id}")
def remove_cart_item(line_id: str, user: AuthUser = Depends(get_current_user), db: Database = Depends(get_db)):
    return ok(cart.remove_cart_line(db, user, line_id), "Item removed from cart")


@app.delete("/cart")
def clear_cart(user: AuthUser = Depends(get_current_user), db: Database = Depends(get_db)):
    return ok(cart.clear_cart(db, user), "Cart cleared")


# Orders
@app.post("/orders", status_code=201)
def create_order(
    payload: Dict[str, Any] = Body(...),
    user: Optional[AuthUser] = Depends(get_optional_user),
    db: Database = Depends(get_db),
):
    draft = validate_checkout(payload, user)
    order = place_order(db, draft, user)
    return ok({"order": serialize_order(order)}, "Order created successfully")


@app.get("/orders/mine")
def my_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user: AuthUser = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    filt = {"user_id": user.id}
    total = db["order"].count_documents(filt)
    docs = db["order"].find(filt).sort("created_at", DESCENDING).skip((page - 1) * limit).limit(limit)
    total_pages = math.ceil(total / limit) if total else 0
    return ok({
        "orders": [serialize_order(o) for o in docs],
        "pagination": {
            "currentPage": page,
            "totalPages": total_pages,
            "totalOrders": total,
            "hasPrevPage": page > 1,
            "hasNextPage": page < total_pages,
        },
    })


@app.get("/orders/{order_id}")
def get_order(order_id: str, user: AuthUser = Depends(get_current_user), db: Database = Depends(get_db)):
    _id = oid(order_id)
    order = db["order"].find_one({"_id": _id}) if _id else None
    if not order:
        raise NotFoundError("Order not found")
    if not user.is_admin and order.get("user_id") != user.id:
        # other shoppers' orders are reported as missing
        raise NotFoundError("Order not found")
    return ok({"order": serialize_order(order)})


@app.post("/orders/{order_id}/cancel")
def cancel_my_order(
    order_id: str,
    body: Optional[CancelRequest] = None,
    user: AuthUser = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    order = cancel_order(db, order_id, user, body.reason if body else None)
    return ok({"order": serialize_order(order)}, "Order cancelled")


# Payments
@app.post("/payments/stripe/create-intent")
def stripe_payment_intent(
    body: PaymentIntentRequest,
    user: Optional[AuthUser] = Depends(get_optional_user),
    db: Database = Depends(get_db),
):
    return ok(create_payment_intent(db, body, user))


@app.post("/payments/stripe/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="stripe-signature"),
    db: Database = Depends(get_db),
):
    # the signature covers the raw body, so it is read before any parsing
    event = parse_stripe_event(await request.body(), stripe_signature)
    await run_in_threadpool(apply_stripe_event, db, event)
    return ok({"received": True})


# Admin: orders
@app.get("/admin/orders", dependencies=[Depends(require_admin)])
def admin_list_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[OrderStatus] = None,
    search: Optional[str] = None,
    sort_by: Literal["createdAt", "total", "orderNumber", "status"] = Query("createdAt", alias="sortBy"),
    sort_order: Literal["asc", "desc"] = Query("desc", alias="sortOrder"),
    db: Database = Depends(get_db),
):
    return ok(admin_orders.list_enriched_orders(db, page, limit, status, search, sort_by, sort_order))


@app.get("/admin/orders/stats", dependencies=[Depends(require_admin)])
def admin_order_stats(db: Database = Depends(get_db)):
    return ok(admin_orders.order_stats(db))


@app.put("/admin/orders/{order_id}/status")
def admin_update_order_status(
    order_id: str,
    body: StatusUpdate,
    admin: AuthUser = Depends(require_admin),
    db: Database = Depends(get_db),
):
    order, previous = change_order_status(db, order_id, body.status, body.note, body.tracking_number, actor=admin)
    return ok(
        {
            "order": serialize_order(order),
            "previousStatus": previous,
        },
        "Order status updated successfully",
    )


# Admin: reviews
@app.get("/admin/reviews", dependencies=[Depends(require_admin)])
def admin_list_reviews(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: Literal["all", "approved", "pending"] = "all",
    db: Database = Depends(get_db),
):
    return ok(reviews.admin_list_reviews(db, page, limit, status))


@app.patch("/admin/reviews/{review_id}", dependencies=[Depends(require_admin)])
def admin_set_review_approval(review_id: str, body: ReviewApproval, db: Database = Depends(get_db)):
    review = reviews.set_approval(db, review_id, body.is_approved)
    return ok({"review": reviews.review_out(review)}, "Review updated successfully")


# Admin: users
@app.get("/admin/users", dependencies=[Depends(require_admin)])
def admin_list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Database = Depends(get_db),
):
    total = db["user"].count_documents({})
    docs = (
        db["user"]
        .find({}, {"password_hash": 0, "cart": 0})
        .sort("created_at", DESCENDING)
        .skip((page - 1) * limit)
        .limit(limit)
    )
    total_pages = math.ceil(total / limit) if total else 0
    return ok({
        "users": [user_out(u) for u in docs],
        "pagination": {
            "currentPage": page,
            "totalPages": total_pages,
            "totalUsers": total,
            "hasPrevPage": page > 1,
            "hasNextPage": page < total_pages,
        },
    })


@app.patch("/admin/users/{user_id}/status")
def admin_set_user_status(
    user_id: str,
    body: UserStatusUpdate,
    admin: AuthUser = Depends(require_admin),
    db: Database = Depends(get_db),
):
    if user_id == admin.id and not body.is_active:
        raise AuthorizationError("Admins cannot deactivate their own account")
    _id = oid(user_id)
    doc = db["user"].find_one_and_update(
        {"_id": _id},
        {"$set": {"is_active": body.is_active, "updated_at": now_utc()}},
        projection={"password_hash": 0, "cart": 0},
        return_document=ReturnDocument.AFTER,
    ) if _id else None
    if not doc:
        raise NotFoundError("User not found")
    logger.info("User %s set active=%s by %s", user_id, body.is_active, admin.id)
    return ok({"user": user_out(doc)}, "User status updated")


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", settings.PORT))
    uvicorn.run(app, host="0.0.0.0", port=port)
