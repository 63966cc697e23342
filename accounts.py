"""
User accounts: creation, admin seeding and the shopper's own profile.
"""
import logging
from typing import Any, Dict, Optional

from fastapi import HTTPException
from pydantic import EmailStr, Field, field_validator
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from auth import AuthUser, hash_password
from database import create_document, now_utc, oid, to_str_id
from errors import ConflictError, NotFoundError
from schemas import ApiModel, Role, ShippingAddress, User, UserOut
from settings import get_settings

logger = logging.getLogger(__name__)

PRIVATE_FIELDS = {"password_hash": 0, "cart": 0}


class ProfileUpdate(ApiModel):
    name: Optional[str] = Field(None, min_length=2, max_length=100)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(None, max_length=20)
    avatar: Optional[str] = None
    address: Optional[ShippingAddress] = None

    @field_validator("name", "email", mode="before")
    @classmethod
    def not_null(cls, v: Any) -> Any:
        if v is None:
            raise ValueError("Field cannot be null")
        return v


def user_out(doc: Dict[str, Any]) -> Dict[str, Any]:
    return UserOut.model_validate(to_str_id(doc)).model_dump(by_alias=True, mode="json")


def create_user(db: Database, name: str, email: str, password: str, role: Role = "user", **fields) -> Dict[str, Any]:
    email = email.lower()
    if db["user"].find_one({"email": email}):
        raise HTTPException(status_code=400, detail="Email already registered")
    user = User(
        name=name.strip(),
        email=email,
        password_hash=hash_password(password),
        role=role,
        **fields,
    )
    try:
        user_id = create_document(db, "user", user)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Email already registered")
    logger.info("Created %s account %s", role, user_id)
    return db["user"].find_one({"_id": oid(user_id)})


def seed_admin(db: Database) -> None:
    settings = get_settings()
    if not settings.ADMIN_EMAIL or not settings.ADMIN_PASSWORD:
        return
    if db["user"].find_one({"email": settings.ADMIN_EMAIL.lower()}):
        return
    create_user(db, settings.ADMIN_NAME, settings.ADMIN_EMAIL, settings.ADMIN_PASSWORD, role="admin")


def get_profile(db: Database, user: AuthUser) -> Dict[str, Any]:
    doc = db["user"].find_one({"_id": oid(user.id)}, PRIVATE_FIELDS)
    if not doc:
        raise NotFoundError("User not found")
    return doc


def update_profile(db: Database, user: AuthUser, payload: ProfileUpdate) -> Dict[str, Any]:
    """Update name, email, phone, avatar or address; role and counters are not editable here."""
    changes = payload.model_dump(exclude_unset=True)
    if "email" in changes:
        changes["email"] = changes["email"].lower()
        taken = db["user"].find_one({"email": changes["email"], "_id": {"$ne": oid(user.id)}}, {"_id": 1})
        if taken:
            raise ConflictError("Email already in use")
    if "name" in changes:
        changes["name"] = changes["name"].strip()
    changes["updated_at"] = now_utc()
    try:
        doc = db["user"].find_one_and_update(
            {"_id": oid(user.id)},
            {"$set": changes},
            projection=PRIVATE_FIELDS,
            return_document=ReturnDocument.AFTER,
        )
    except DuplicateKeyError:
        raise ConflictError("Email already in use")
    if not doc:
        raise NotFoundError("User not found")
    return doc
