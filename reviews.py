"""
Product reviews.

One review per shopper and product. Only approved reviews count towards the
product's rating, which is recomputed whenever a review is added, removed or
its approval changes.
"""
import logging
import math
from typing import Any, Dict, Optional

from pydantic import Field, field_validator
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from auth import AuthUser
from catalog import get_product, primary_image
from database import create_document, now_utc, oid, to_str_id
from errors import AuthorizationError, ConflictError, NotFoundError
from schemas import ApiModel, Review, ReviewOut, SizeFit

logger = logging.getLogger(__name__)

SIZE_FITS = ("Runs Small", "True to Size", "Runs Large")

SORTS = {
    "newest": [("created_at", DESCENDING)],
    "oldest": [("created_at", ASCENDING)],
    "highest": [("rating", DESCENDING), ("created_at", DESCENDING)],
    "lowest": [("rating", ASCENDING), ("created_at", DESCENDING)],
    "helpful": [("helpful_count", DESCENDING), ("created_at", DESCENDING)],
}


class ReviewIn(ApiModel):
    product_id: str
    rating: int = Field(..., ge=1, le=5)
    title: str = Field(..., min_length=1, max_length=100)
    comment: str = Field(..., min_length=1, max_length=1000)
    size_fit: SizeFit

    @field_validator("title", "comment", mode="before")
    @classmethod
    def strip(cls, v: Any) -> Any:
        return v.strip() if isinstance(v, str) else v


def review_out(doc: Dict[str, Any]) -> Dict[str, Any]:
    return ReviewOut.model_validate(to_str_id(doc)).model_dump(by_alias=True, mode="json")


def _pagination(page: int, limit: int, total: int) -> Dict[str, Any]:
    total_pages = math.ceil(total / limit) if total else 0
    return {
        "currentPage": page,
        "totalPages": total_pages,
        "totalReviews": total,
        "hasPrevPage": page > 1,
        "hasNextPage": page < total_pages,
    }


def rating_stats(db: Database, product_id: str) -> Dict[str, Any]:
    pipeline = [
        {"$match": {"product_id": product_id, "is_approved": True}},
        {"$group": {"_id": "$rating", "count": {"$sum": 1}}},
    ]
    distribution = {str(r): 0 for r in range(5, 0, -1)}
    for row in db["review"].aggregate(pipeline):
        distribution[str(row["_id"])] = row["count"]
    total = sum(distribution.values())
    average = sum(int(r) * n for r, n in distribution.items()) / total if total else 0
    return {"averageRating": round(average, 1), "totalReviews": total, "distribution": distribution}


def size_fit_stats(db: Database, product_id: str) -> Dict[str, Any]:
    pipeline = [
        {"$match": {"product_id": product_id, "is_approved": True}},
        {"$group": {"_id": "$size_fit", "count": {"$sum": 1}}},
    ]
    breakdown = {fit: 0 for fit in SIZE_FITS}
    for row in db["review"].aggregate(pipeline):
        breakdown[row["_id"]] = row["count"]
    total = sum(breakdown.values())
    if not total:
        return {"recommendation": "True to Size", "percentage": 0, "breakdown": breakdown}
    # ties go to the first fit in SIZE_FITS order
    best = max(SIZE_FITS, key=lambda fit: breakdown[fit])
    return {"recommendation": best, "percentage": round(breakdown[best] * 100 / total), "breakdown": breakdown}


def refresh_product_rating(db: Database, product_id: str) -> None:
    stats = rating_stats(db, product_id)
    db["product"].update_one(
        {"_id": oid(product_id)},
        {"$set": {"rating": stats["averageRating"], "review_count": stats["totalReviews"], "updated_at": now_utc()}},
    )


def has_purchased(db: Database, user_id: str, product_id: str) -> bool:
    order = db["order"].find_one(
        {"user_id": user_id, "items.product_id": product_id, "status": {"$ne": "cancelled"}},
        {"_id": 1},
    )
    return order is not None


def add_review(db: Database, user: AuthUser, payload: ReviewIn) -> Dict[str, Any]:
    product = get_product(db, payload.product_id)
    product_id = str(product["_id"])
    if db["review"].find_one({"user_id": user.id, "product_id": product_id}, {"_id": 1}):
        raise ConflictError("You have already reviewed this product")

    review = Review(
        user_id=user.id,
        user_name=user.name,
        product_id=product_id,
        rating=payload.rating,
        title=payload.title,
        comment=payload.comment,
        size_fit=payload.size_fit,
        verified_buyer=has_purchased(db, user.id, product_id),
    )
    try:
        review_id = create_document(db, "review", review)
    except DuplicateKeyError:
        raise ConflictError("You have already reviewed this product")
    refresh_product_rating(db, product_id)
    logger.info("Review %s added to product %s by %s", review_id, product_id, user.id)
    return db["review"].find_one({"_id": oid(review_id)})


def list_reviews(
    db: Database,
    product_id: str,
    page: int = 1,
    limit: int = 10,
    sort_by: str = "newest",
    rating: Optional[int] = None,
) -> Dict[str, Any]:
    product_id = str(get_product(db, product_id)["_id"])
    filt: Dict[str, Any] = {"product_id": product_id, "is_approved": True}
    if rating:
        filt["rating"] = rating
    total = db["review"].count_documents(filt)
    docs = db["review"].find(filt).sort(SORTS.get(sort_by, SORTS["newest"])).skip((page - 1) * limit).limit(limit)
    return {
        "reviews": [review_out(d) for d in docs],
        "pagination": _pagination(page, limit, total),
        "ratingStats": rating_stats(db, product_id),
        "sizeFitStats": size_fit_stats(db, product_id),
    }


def _find(db: Database, review_id: str) -> Dict[str, Any]:
    _id = oid(review_id)
    doc = db["review"].find_one({"_id": _id}) if _id else None
    if not doc:
        raise NotFoundError("Review not found")
    return doc


def delete_review(db: Database, review_id: str, user: AuthUser) -> None:
    review = _find(db, review_id)
    if not user.is_admin and review["user_id"] != user.id:
        raise AuthorizationError("Not authorized to delete this review")
    db["review"].delete_one({"_id": review["_id"]})
    refresh_product_rating(db, review["product_id"])
    logger.info("Review %s deleted by %s", review_id, user.id)


def mark_helpful(db: Database, review_id: str) -> int:
    _id = oid(review_id)
    doc = db["review"].find_one_and_update(
        {"_id": _id},
        {"$inc": {"helpful_count": 1}},
        projection={"helpful_count": 1},
        return_document=ReturnDocument.AFTER,
    ) if _id else None
    if not doc:
        raise NotFoundError("Review not found")
    return doc["helpful_count"]


def set_approval(db: Database, review_id: str, approved: bool) -> Dict[str, Any]:
    review = _find(db, review_id)
    doc = db["review"].find_one_and_update(
        {"_id": review["_id"]},
        {"$set": {"is_approved": approved, "updated_at": now_utc()}},
        return_document=ReturnDocument.AFTER,
    )
    refresh_product_rating(db, review["product_id"])
    return doc


def admin_list_reviews(db: Database, page: int = 1, limit: int = 20, status: str = "all") -> Dict[str, Any]:
    filt: Dict[str, Any] = {}
    if status == "approved":
        filt["is_approved"] = True
    elif status == "pending":
        filt["is_approved"] = False
    total = db["review"].count_documents(filt)
    docs = list(db["review"].find(filt).sort("created_at", DESCENDING).skip((page - 1) * limit).limit(limit))

    ids = [o for o in {oid(d["product_id"]) for d in docs} if o]
    products = {str(p["_id"]): p for p in db["product"].find({"_id": {"$in": ids}}, {"name": 1, "images": 1})}
    reviews = []
    for d in docs:
        out = review_out(d)
        product = products.get(d["product_id"])
        out["product"] = {"name": product.get("name"), "image": primary_image(product)} if product else None
        reviews.append(out)
    return {"reviews": reviews, "pagination": _pagination(page, limit, total)}
