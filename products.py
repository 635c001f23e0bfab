"""
Product catalog: CRUD, search and per-user reviews.
"""

import logging
import re
from typing import Optional

from pydantic import ValidationError
from pymongo import ReturnDocument

from database import create_document, paginate, to_object_id, utcnow
from errors import ForbiddenError, NotFoundError, ValidationFailedError
from schemas import Product

logger = logging.getLogger(__name__)

LOW_STOCK_LEVEL = 10


def with_derived_fields(product: dict) -> dict:
    """Add discount_percentage and stock_status to a product document."""
    product = {**product}
    original = product.get("original_price")
    price = product.get("price", 0)
    if original and original > price:
        product["discount_percentage"] = round((original - price) / original * 100)
    else:
        product["discount_percentage"] = 0

    stock = product.get("stock", 0)
    if stock == 0:
        product["stock_status"] = "out-of-stock"
    elif stock < LOW_STOCK_LEVEL:
        product["stock_status"] = "low-stock"
    else:
        product["stock_status"] = "in-stock"
    return product


def compute_rating(reviews: dict) -> dict:
    if not reviews:
        return {"average": 0, "count": 0}
    total = sum(r["rating"] for r in reviews.values())
    return {"average": round(total / len(reviews), 1), "count": len(reviews)}


def get_product(db, product_id) -> dict:
    product = db["product"].find_one({"_id": to_object_id(product_id, "product id")})
    if not product:
        raise NotFoundError("Product not found")
    return product


def create_product(db, seller: dict, data: dict) -> dict:
    record = Product(**data, seller=str(seller["_id"]))
    product_id = create_document(db, "product", record.model_dump())
    logger.info("Product %s created by %s", product_id, seller["_id"])
    return get_product(db, product_id)


def list_products(
    db,
    page: int = 1,
    limit: int = 10,
    search: Optional[str] = None,
    category: Optional[str] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    sort: Optional[str] = None,
):
    query = {"is_active": True}
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        query["$or"] = [{"name": pattern}, {"description": pattern}, {"tags": pattern}]
    if category:
        query["category"] = category
    if min_price is not None or max_price is not None:
        query["price"] = {}
        if min_price is not None:
            query["price"]["$gte"] = min_price
        if max_price is not None:
            query["price"]["$lte"] = max_price

    sort_spec = [("created_at", -1)]
    if sort:
        field = sort.lstrip("-")
        sort_spec = [(field, -1 if sort.startswith("-") else 1)]

    docs, pagination = paginate(db, "product", query, page, limit, sort_spec)
    return [with_derived_fields(d) for d in docs], pagination


def view_product(db, product_id, user: Optional[dict] = None) -> dict:
    """Fetch a product and count the view.

    Inactive products are only visible to their seller and to admins.
    """
    product = get_product(db, product_id)
    if not product.get("is_active", True):
        if user is None or (product["seller"] != str(user["_id"]) and user.get("role") != "admin"):
            raise NotFoundError("Product not found")
    return db["product"].find_one_and_update(
        {"_id": product["_id"]},
        {"$inc": {"views": 1}},
        return_document=ReturnDocument.AFTER,
    )


def _check_owner(product: dict, user: dict, action: str):
    if product["seller"] != str(user["_id"]) and user.get("role") != "admin":
        raise ForbiddenError(f"Not authorized to {action} this product")


def update_product(db, product_id, user: dict, changes: dict) -> dict:
    product = get_product(db, product_id)
    _check_owner(product, user, "update")

    merged = {k: v for k, v in product.items() if k not in ("_id", "created_at", "updated_at")}
    merged.update(changes)
    try:
        Product(**merged)
    except ValidationError as exc:
        raise ValidationFailedError(
            [{"field": ".".join(str(p) for p in e["loc"]), "message": e["msg"]} for e in exc.errors()]
        )

    return db["product"].find_one_and_update(
        {"_id": product["_id"]},
        {"$set": {**changes, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )


def delete_product(db, product_id, user: dict):
    product = get_product(db, product_id)
    _check_owner(product, user, "delete")
    db["product"].delete_one({"_id": product["_id"]})
    logger.info("Product %s deleted by %s", product["_id"], user["_id"])


def add_review(db, product_id, user: dict, rating: int, comment: str) -> dict:
    """Add or replace the caller's review and recompute the aggregate rating."""
    product = get_product(db, product_id)
    user_key = str(user["_id"])
    now = utcnow()

    existing = product.get("reviews", {}).get(user_key)
    if existing:
        update = {
            f"reviews.{user_key}.rating": rating,
            f"reviews.{user_key}.comment": comment,
            f"reviews.{user_key}.updated_at": now,
        }
    else:
        update = {
            f"reviews.{user_key}": {
                "rating": rating,
                "comment": comment,
                "helpful": 0,
                "created_at": now,
                "updated_at": now,
            }
        }

    db["product"].update_one(
        {"_id": product["_id"]},
        {"$set": update, "$inc": {"reviews_version": 1}},
    )

    # only store a rating computed from the reviews as they stand at write time
    while True:
        current = db["product"].find_one({"_id": product["_id"]})
        if current is None:
            raise NotFoundError("Product not found")
        updated = db["product"].find_one_and_update(
            {"_id": product["_id"], "reviews_version": current.get("reviews_version", 0)},
            {"$set": {"rating": compute_rating(current.get("reviews", {}))}},
            return_document=ReturnDocument.AFTER,
        )
        if updated is not None:
            return updated
        logger.debug("Reviews of product %s changed during rating update, retrying", product["_id"])


def list_categories(db) -> list[str]:
    return sorted(db["product"].distinct("category"))
