"""
MongoDB access

The client is created lazily on first use and shared by every request.
Routes receive the database through the ``get_db`` dependency so tests can
swap in another handle.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from settings import get_settings

logger = logging.getLogger(__name__)

_client: Optional[MongoClient] = None


def get_db() -> Database:
    global _client
    settings = get_settings()
    if _client is None:
        logger.info("Connecting to MongoDB database %s", settings.DATABASE_NAME)
        _client = MongoClient(settings.DATABASE_URL)
    return _client[settings.DATABASE_NAME]


def ensure_indexes(db: Database) -> None:
    db["user"].create_index("email", unique=True)
    db["order"].create_index("order_number", unique=True)
    db["order"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    db["order"].create_index("status")
    db["product"].create_index([("category", ASCENDING), ("section", ASCENDING)])
    db["review"].create_index([("user_id", ASCENDING), ("product_id", ASCENDING)], unique=True)
    db["review"].create_index([("product_id", ASCENDING), ("created_at", DESCENDING)])


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def oid(value: Optional[str]) -> Optional[ObjectId]:
    if value is None or not ObjectId.is_valid(value):
        return None
    return ObjectId(value)


def to_str_id(doc: Dict[str, Any]) -> Dict[str, Any]:
    if not doc:
        return doc
    d = {**doc}
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    # normalize ObjectId refs to string
    for k, v in list(d.items()):
        if isinstance(v, ObjectId):
            d[k] = str(v)
    return d


def create_document(db: Database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    if isinstance(data, BaseModel):
        data = data.model_dump()
    now = now_utc()
    doc = {**data, "created_at": now, "updated_at": now}
    result = db[collection_name].insert_one(doc)
    return str(result.inserted_id)

