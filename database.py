"""
Database helpers

The MongoDB handle is created once from DATABASE_URL / DATABASE_NAME.
Collections: "user", "product", "order".
"""

from datetime import datetime, timezone
from typing import Optional

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import HTTPException
from pymongo import MongoClient

import config
from errors import ValidationFailedError

_client = None
db = None

if config.DATABASE_URL and config.DATABASE_NAME:
    _client = MongoClient(config.DATABASE_URL)
    db = _client[config.DATABASE_NAME]


def get_db():
    """FastAPI dependency returning the database handle."""
    if db is None:
        raise HTTPException(status_code=500, detail="Database not available")
    return db


def utcnow() -> datetime:
    # BSON dates come back naive, so keep everything naive UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_object_id(value, field: str = "id") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise ValidationFailedError(
            [{"field": field, "message": f"Invalid {field}"}],
            message=f"Invalid {field}",
        )


def create_document(database, collection_name: str, data: dict) -> str:
    """Insert a document stamped with created_at/updated_at and return its id."""
    now = utcnow()
    doc = {**data, "created_at": now, "updated_at": now}
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(
    database,
    collection_name: str,
    filter_dict: Optional[dict] = None,
    limit: Optional[int] = None,
    skip: int = 0,
    sort: Optional[list] = None,
) -> list[dict]:
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if skip:
        cursor = cursor.skip(skip)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def paginate(database, collection_name: str, filter_dict: dict, page: int, limit: int, sort: list):
    """Return (documents, pagination block) for a page of a collection."""
    total = database[collection_name].count_documents(filter_dict)
    docs = get_documents(
        database, collection_name, filter_dict, limit=limit, skip=(page - 1) * limit, sort=sort
    )
    pagination = {
        "current_page": page,
        "total_pages": (total + limit - 1) // limit,
        "total_items": total,
        "items_per_page": limit,
    }
    return docs, pagination
