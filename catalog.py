import logging
import math
import re
from typing import Any, Dict, List, Literal, Optional

from pydantic import Field, field_validator
from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database

from database import create_document, now_utc, oid, to_str_id
from errors import ConflictError, NotFoundError
from schemas import ApiModel, Product, ProductImage, ProductOut, check_stock_by_size

logger = logging.getLogger(__name__)


class ProductUpdate(ApiModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    price: Optional[float] = Field(None, ge=0)
    original_price: Optional[float] = Field(None, ge=0)
    stock_by_size: Optional[Dict[str, int]] = None
    images: Optional[List[ProductImage]] = None
    category: Optional[str] = Field(None, min_length=1)
    section: Optional[Literal["men", "women"]] = None
    sku: Optional[str] = None
    description: Optional[str] = Field(None, max_length=2000)
    is_active: Optional[bool] = None

    @field_validator("name", "price", "stock_by_size", "images", "category", "is_active", mode="before")
    @classmethod
    def not_null(cls, v: Any) -> Any:
        # optional in the update, required on the stored product
        if v is None:
            raise ValueError("Field cannot be null")
        return v

    @field_validator("stock_by_size")
    @classmethod
    def check_stock(cls, v: Optional[Dict[str, int]]) -> Optional[Dict[str, int]]:
        return check_stock_by_size(v)


def primary_image(product: Dict[str, Any]) -> Optional[str]:
    images = product.get("images") or []
    for img in images:
        if img.get("is_primary"):
            return img.get("url")
    return images[0].get("url") if images else None


def product_out(doc: Dict[str, Any]) -> Dict[str, Any]:
    d = to_str_id(doc)
    d["primary_image"] = primary_image(doc)
    d["total_stock"] = sum((doc.get("stock_by_size") or {}).values())
    return ProductOut.model_validate(d).model_dump(by_alias=True, mode="json")


def list_products(
    db: Database,
    category: Optional[str] = None,
    section: Optional[str] = None,
    q: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
) -> Dict[str, Any]:
    filt: Dict[str, Any] = {"is_active": True}
    if category:
        filt["category"] = category
    if section:
        filt["section"] = section
    if q:
        pattern = {"$regex": re.escape(q), "$options": "i"}
        filt["$or"] = [{"name": pattern}, {"description": pattern}, {"category": pattern}]

    total = db["product"].count_documents(filt)
    docs = db["product"].find(filt).sort("created_at", DESCENDING).skip((page - 1) * limit).limit(limit)
    total_pages = math.ceil(total / limit) if total else 0
    return {
        "products": [product_out(d) for d in docs],
        "pagination": {
            "currentPage": page,
            "totalPages": total_pages,
            "totalProducts": total,
            "hasPrevPage": page > 1,
            "hasNextPage": page < total_pages,
        },
    }


def get_product(db: Database, product_id: str, include_inactive: bool = False) -> Dict[str, Any]:
    _id = oid(product_id)
    doc = db["product"].find_one({"_id": _id}) if _id else None
    if not doc or (not include_inactive and not doc.get("is_active", True)):
        raise NotFoundError("Product not found")
    return doc


def create_product(db: Database, payload: Product) -> Dict[str, Any]:
    if payload.sku and db["product"].find_one({"sku": payload.sku}):
        raise ConflictError("SKU already exists")
    product_id = create_document(db, "product", payload)
    logger.info("Product %s created (%s)", product_id, payload.name)
    return get_product(db, product_id, include_inactive=True)


def update_product(db: Database, product_id: str, payload: ProductUpdate) -> Dict[str, Any]:
    """Apply a partial update.

    ``stockBySize`` sets the count of each size it names and leaves other
    sizes untouched.
    """
    current = get_product(db, product_id, include_inactive=True)
    updates = payload.model_dump(exclude_unset=True)
    if updates.get("sku") and updates["sku"] != current.get("sku") and db["product"].find_one({"sku": updates["sku"]}):
        raise ConflictError("SKU already exists")

    changes: Dict[str, Any] = {"updated_at": now_utc()}
    for size, count in (updates.pop("stock_by_size", None) or {}).items():
        changes[f"stock_by_size.{size}"] = count
    changes.update(updates)

    doc = db["product"].find_one_and_update(
        {"_id": current["_id"]}, {"$set": changes}, return_document=ReturnDocument.AFTER
    )
    if not doc:
        raise NotFoundError("Product not found")
    return doc


def deactivate_product(db: Database, product_id: str) -> Dict[str, Any]:
    current = get_product(db, product_id, include_inactive=True)
    doc = db["product"].find_one_and_update(
        {"_id": current["_id"]},
        {"$set": {"is_active": False, "updated_at": now_utc()}},
        return_document=ReturnDocument.AFTER,
    )
    logger.info("Product %s deactivated", product_id)
    return doc
