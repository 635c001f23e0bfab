"""
User profile and admin user management.
"""

import logging
import re
from typing import Optional

from pymongo import ReturnDocument

from database import paginate, to_object_id, utcnow
from errors import BadRequestError, NotFoundError

logger = logging.getLogger(__name__)


def get_user(db, user_id) -> dict:
    user = db["user"].find_one({"_id": to_object_id(user_id, "user id")})
    if not user:
        raise NotFoundError("User not found")
    return user


def _update(db, user_id, changes: dict) -> dict:
    if not changes:
        return db["user"].find_one({"_id": user_id})
    return db["user"].find_one_and_update(
        {"_id": user_id},
        {"$set": {**changes, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )


def update_profile(db, user: dict, name: Optional[str] = None, avatar: Optional[str] = None) -> dict:
    changes = {}
    if name:
        changes["name"] = name
    if avatar:
        changes["avatar"] = avatar
    return _update(db, user["_id"], changes)


def list_users(db, page: int = 1, limit: int = 10, search: Optional[str] = None, role: Optional[str] = None):
    query = {}
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        query["$or"] = [{"name": pattern}, {"email": pattern}]
    if role:
        query["role"] = role
    return paginate(db, "user", query, page, limit, [("created_at", -1)])


def admin_update_user(db, user_id, changes: dict) -> dict:
    user = get_user(db, user_id)
    changes = {k: v for k, v in changes.items() if v is not None}
    if "email" in changes:
        changes["email"] = changes["email"].lower()
        clash = db["user"].find_one({"email": changes["email"], "_id": {"$ne": user["_id"]}})
        if clash:
            raise BadRequestError("User already exists with this email")
    return _update(db, user["_id"], changes)


def delete_user(db, user_id, acting_user: dict):
    user = get_user(db, user_id)
    if user["_id"] == acting_user["_id"]:
        raise BadRequestError("Cannot delete your own account")
    db["user"].delete_one({"_id": user["_id"]})
    logger.info("User %s deleted by %s", user["_id"], acting_user["_id"])
