"""
MongoDB access for the storefront.

`db` is None when DATABASE_URL is not configured; request handlers receive the
database through the `get_db` dependency so tests can swap in another one.
"""
import logging
import math
import os
from datetime import datetime, timezone
from typing import Any, Optional

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, MongoClient

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "storefront")

client = MongoClient(DATABASE_URL) if DATABASE_URL else None
db = client[DATABASE_NAME] if client is not None else None


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def to_object_id(value: Any) -> Optional[ObjectId]:
    """Parse an id string, returning None when it is not a valid ObjectId."""
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return None


def serialize_doc(value: Any) -> Any:
    """Convert a Mongo document into something JSON friendly (`_id` becomes `id`)."""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, list):
        return [serialize_doc(v) for v in value]
    if isinstance(value, dict):
        out = {k: serialize_doc(v) for k, v in value.items()}
        if "_id" in out:
            out["id"] = out.pop("_id")
        return out
    return value


def paginate(total: int, page: int, limit: int) -> dict:
    """Pagination fields for a list response: skip is (page - 1) * limit."""
    return {"total": total, "page": page, "pages": math.ceil(total / limit) if limit else 0}


def create_document(collection_name: str, data: dict, database=None) -> str:
    target = database if database is not None else db
    if target is None:
        raise RuntimeError("Database not configured")
    stamp = now_utc()
    doc = {**data, "created_at": stamp, "updated_at": stamp}
    inserted_id = target[collection_name].insert_one(doc).inserted_id
    return str(inserted_id)


def ensure_indexes(database) -> None:
    database["cart"].create_index([("user", ASCENDING)], unique=True)
    database["cart"].create_index([("items.product_id", ASCENDING)])
    database["order"].create_index([("order_number", ASCENDING)], unique=True)
    database["order"].create_index([("user", ASCENDING), ("created_at", DESCENDING)])
    database["order"].create_index([("status", ASCENDING)])
    database["product"].create_index([("category", ASCENDING), ("price", ASCENDING)])
    database["user"].create_index([("email", ASCENDING)], unique=True)
    logger.info("Indexes ensured on %s", database.name)
