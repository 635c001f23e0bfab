"""
Order workflow

Turns a cart of (product id, quantity) pairs into a priced order, reserves
stock for it, and tracks the order's status history.

Stock is reserved with a conditional decrement ({"stock": {"$gte": qty}}) so
two concurrent checkouts can never both take the last unit. Reservations are
released again if a later item or the order insert fails, which keeps
"order exists" and "stock taken" in step without a multi-document transaction.
"""

import logging
import re
import secrets
from typing import Optional

from pymongo import ReturnDocument

import config
from database import create_document, paginate, to_object_id, utcnow
from errors import ConflictError, ForbiddenError, InsufficientStockError, NotFoundError
from schemas import Order

logger = logging.getLogger(__name__)

CANCELLABLE_STATUSES = ("pending", "confirmed")

# Allowed moves on the privileged status-update path.
STATUS_TRANSITIONS = {
    "pending": ("confirmed", "cancelled"),
    "confirmed": ("shipped", "cancelled"),
    "shipped": ("delivered",),
    "delivered": (),
    "cancelled": (),
}


def calculate_prices(items_price: float) -> dict:
    items_price = round(items_price, 2)
    shipping_price = 0.0 if items_price >= config.FREE_SHIPPING_THRESHOLD else config.SHIPPING_FEE
    tax_price = round(items_price * config.TAX_RATE, 2)
    return {
        "items_price": items_price,
        "shipping_price": shipping_price,
        "tax_price": tax_price,
        "total_price": round(items_price + shipping_price + tax_price, 2),
    }


def generate_order_number() -> str:
    return f"ORD-{utcnow():%Y%m%d%H%M%S}-{secrets.token_hex(3).upper()}"


def status_entry(status: str, note: Optional[str] = None) -> dict:
    return {"status": status, "note": note, "timestamp": utcnow()}


# -----------------------------
# Stock reservation
# -----------------------------

def reserve_stock(db, product_id, quantity: int) -> bool:
    """Atomically take `quantity` units. False when not enough are left."""
    result = db["product"].update_one(
        {"_id": product_id, "stock": {"$gte": quantity}},
        {"$inc": {"stock": -quantity}},
    )
    return result.modified_count == 1


def release_stock(db, product_id, quantity: int):
    db["product"].update_one({"_id": product_id}, {"$inc": {"stock": quantity}})


def _release_all(db, reserved):
    for product_id, quantity in reserved:
        release_stock(db, product_id, quantity)
        logger.info("Released %d units of product %s", quantity, product_id)


# -----------------------------
# Operations
# -----------------------------

def create_order(
    db,
    user: dict,
    items: list[dict],
    shipping_address: dict,
    payment_method: str,
    notes: Optional[str] = None,
) -> dict:
    order_items = []
    items_price = 0.0
    for item in items:
        product_id = to_object_id(item["product"], "product id")
        product = db["product"].find_one({"_id": product_id})
        if not product:
            raise NotFoundError(f"Product with ID {item['product']} not found")
        if product["stock"] < item["quantity"]:
            raise InsufficientStockError(product["name"], item["quantity"], product["stock"])

        images = product.get("images") or []
        order_items.append(
            {
                "product": str(product_id),
                "name": product["name"],
                "image": images[0]["url"] if images else "",
                "price": product["price"],
                "quantity": item["quantity"],
            }
        )
        items_price += product["price"] * item["quantity"]

    record = Order(
        user=str(user["_id"]),
        order_number=generate_order_number(),
        items=order_items,
        shipping_address=shipping_address,
        payment_method=payment_method,
        notes=notes,
        status="pending",
        status_history=[status_entry("pending", "Order placed successfully")],
        **calculate_prices(items_price),
    )

    reserved = []
    try:
        for line in order_items:
            product_id = to_object_id(line["product"])
            if not reserve_stock(db, product_id, line["quantity"]):
                raise InsufficientStockError(line["name"], line["quantity"])
            reserved.append((product_id, line["quantity"]))
        order_id = create_document(db, "order", record.model_dump())
    except Exception:
        _release_all(db, reserved)
        raise

    logger.info("Order %s (%s) created for user %s", order_id, record.order_number, user["_id"])
    return db["order"].find_one({"_id": to_object_id(order_id)})


def get_order(db, order_id) -> dict:
    order = db["order"].find_one({"_id": to_object_id(order_id, "order id")})
    if not order:
        raise NotFoundError("Order not found")
    return order


def get_order_for_user(db, order_id, user: dict) -> dict:
    order = get_order(db, order_id)
    if order["user"] != str(user["_id"]) and user.get("role") != "admin":
        raise ForbiddenError("Not authorized to view this order")
    return order


def list_user_orders(db, user: dict, page: int = 1, limit: int = 10, status: Optional[str] = None):
    query = {"user": str(user["_id"])}
    if status:
        query["status"] = status
    return paginate(db, "order", query, page, limit, [("created_at", -1)])


def list_all_orders(db, page: int = 1, limit: int = 10, status: Optional[str] = None, search: Optional[str] = None):
    query = {}
    if status:
        query["status"] = status
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        query["$or"] = [{"order_number": pattern}, {"shipping_address.full_name": pattern}]
    return paginate(db, "order", query, page, limit, [("created_at", -1)])


def _cancel(db, order: dict, note: str) -> dict:
    # conditional on the current status so stock is restored at most once
    updated = db["order"].find_one_and_update(
        {"_id": order["_id"], "status": {"$in": list(CANCELLABLE_STATUSES)}},
        {
            "$set": {"status": "cancelled", "updated_at": utcnow()},
            "$push": {"status_history": status_entry("cancelled", note)},
        },
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise ConflictError("Order cannot be cancelled at this stage")

    for line in updated["items"]:
        release_stock(db, to_object_id(line["product"]), line["quantity"])
    logger.info("Order %s cancelled, stock restored", order["_id"])
    return updated


def cancel_order(db, order_id, user: dict) -> dict:
    order = get_order(db, order_id)
    if order["user"] != str(user["_id"]):
        raise ForbiddenError("Not authorized to cancel this order")
    if order["status"] not in CANCELLABLE_STATUSES:
        raise ConflictError("Order cannot be cancelled at this stage")
    return _cancel(db, order, "Cancelled by user")


def update_status(
    db,
    order_id,
    status: str,
    note: Optional[str] = None,
    tracking_number: Optional[str] = None,
) -> dict:
    """Privileged status change, restricted to STATUS_TRANSITIONS."""
    order = get_order(db, order_id)
    current = order["status"]
    if status not in STATUS_TRANSITIONS.get(current, ()):
        raise ConflictError(f"Cannot change order status from {current} to {status}")

    if status == "cancelled":
        order = _cancel(db, order, note or "Cancelled by admin")
        if tracking_number:
            order = db["order"].find_one_and_update(
                {"_id": order["_id"]},
                {"$set": {"tracking_number": tracking_number}},
                return_document=ReturnDocument.AFTER,
            )
        return order

    changes = {"status": status, "updated_at": utcnow()}
    if tracking_number:
        changes["tracking_number"] = tracking_number
    updated = db["order"].find_one_and_update(
        {"_id": order["_id"], "status": current},
        {"$set": changes, "$push": {"status_history": status_entry(status, note)}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise ConflictError("Order status changed concurrently, retry")
    logger.info("Order %s status %s -> %s", order["_id"], current, status)
    return updated
