"""Product catalog: listing, admin CRUD and reviews."""
import logging
import math
from typing import List, Optional

from pymongo import ReturnDocument
from pydantic import ValidationError as SchemaError

from database import now_utc, paginate, serialize_doc, to_object_id
from errors import DuplicateActionError, NotFoundError, ValidationError
from schemas import Product, ProductUpdate, Review, UserOut

logger = logging.getLogger(__name__)

SORT_OPTIONS = {
    "price_asc": [("price", 1)],
    "price_desc": [("price", -1)],
    "rating": [("rating", -1)],
    "newest": [("created_at", -1)],
}


def calculate_rating(reviews: List[dict]) -> dict:
    """Average review rating rounded half-up to one decimal, plus the review count."""
    if not reviews:
        return {"rating": 0, "num_reviews": 0}
    avg = sum(r.get("rating", 0) for r in reviews) / len(reviews)
    return {"rating": math.floor(avg * 10 + 0.5) / 10, "num_reviews": len(reviews)}


def find_product(db, product_id: str) -> dict:
    oid = to_object_id(product_id)
    product = db["product"].find_one({"_id": oid}) if oid else None
    if not product:
        raise NotFoundError("Product", product_id)
    return product


def list_products(
    db,
    category: Optional[str] = None,
    search: Optional[str] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    sort: Optional[str] = None,
    page: int = 1,
    limit: int = 12,
) -> dict:
    page = max(page, 1)
    limit = max(limit, 1)
    filter_q = {"is_active": True}
    if category:
        filter_q["category"] = category
    if search:
        filter_q["$or"] = [
            {"name": {"$regex": search, "$options": "i"}},
            {"description": {"$regex": search, "$options": "i"}},
        ]
    if min_price is not None or max_price is not None:
        price_filter = {}
        if min_price is not None:
            price_filter["$gte"] = min_price
        if max_price is not None:
            price_filter["$lte"] = max_price
        filter_q["price"] = price_filter

    cursor = db["product"].find(filter_q).sort(SORT_OPTIONS.get(sort, SORT_OPTIONS["newest"]))
    cursor = cursor.skip((page - 1) * limit).limit(limit)
    items = [serialize_doc(doc) for doc in cursor]
    total = db["product"].count_documents(filter_q)
    return {"items": items, "count": len(items), **paginate(total, page, limit)}


def list_categories(db) -> List[str]:
    return sorted(db["product"].distinct("category"))


def create_product(db, product: Product, seller: UserOut) -> dict:
    stamp = now_utc()
    doc = {
        **product.model_dump(),
        "seller": seller.id,
        "rating": 0,
        "num_reviews": 0,
        "reviews": [],
        "created_at": stamp,
        "updated_at": stamp,
    }
    db["product"].insert_one(doc)
    logger.info("Product %s created by %s", doc["_id"], seller.id)
    return serialize_doc(doc)


def update_product(db, product_id: str, changes: ProductUpdate) -> dict:
    existing = find_product(db, product_id)
    fields = set(Product.model_fields)
    merged = {k: v for k, v in existing.items() if k in fields}
    merged.update(changes.model_dump(exclude_unset=True))
    try:
        validated = Product.model_validate(merged)
    except SchemaError as exc:
        raise ValidationError(f"Invalid product fields: {exc.errors()[0]['msg']}") from exc

    updated = db["product"].find_one_and_update(
        {"_id": existing["_id"]},
        {"$set": {**validated.model_dump(), "updated_at": now_utc()}},
        return_document=ReturnDocument.AFTER,
    )
    return serialize_doc(updated)


def delete_product(db, product_id: str) -> None:
    product = find_product(db, product_id)
    db["product"].delete_one({"_id": product["_id"]})
    logger.info("Product %s deleted", product_id)


def add_review(db, product_id: str, user: UserOut, rating: Optional[int], comment: Optional[str] = None) -> dict:
    if rating is None:
        raise ValidationError("Please provide a rating", field="rating")
    product = find_product(db, product_id)
    reviews = product.get("reviews", [])
    if any(r.get("user_id") == user.id for r in reviews):
        raise DuplicateActionError("You have already reviewed this product")

    review = Review(user_id=user.id, user_name=user.name, rating=rating, comment=comment).model_dump()
    # the user_id guard keeps a concurrent second review from slipping in
    updated = db["product"].find_one_and_update(
        {"_id": product["_id"], "reviews.user_id": {"$ne": user.id}},
        {"$push": {"reviews": review}, "$set": {"updated_at": now_utc()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise DuplicateActionError("You have already reviewed this product")

    # stats come from the list as stored; the size guard lets only a writer
    # that saw every review set them
    stats = calculate_rating(updated["reviews"])
    db["product"].update_one(
        {"_id": updated["_id"], "reviews": {"$size": len(updated["reviews"])}},
        {"$set": stats},
    )
    updated.update(stats)
    return serialize_doc(updated)


def get_reviews(db, product_id: str) -> dict:
    product = find_product(db, product_id)
    return {
        "reviews": serialize_doc(product.get("reviews", [])),
        "rating": product.get("rating", 0),
        "num_reviews": product.get("num_reviews", 0),
    }
