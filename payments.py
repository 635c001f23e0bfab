"""
Payment workflow

Creates Razorpay orders for internal orders, verifies the checkout callback
signature, consumes Razorpay webhooks and issues refunds.

payment_status moves through a small state machine:

    pending/created/failed --captured--> completed --refund--> refunded
    pending/created        --failed----> failed

Every move is a conditional update on the current payment_status, so the
browser callback and the webhook can report the same payment in any order
(or more than once) and the order ends up in the same state.
"""

import hashlib
import hmac
import json
import logging
from decimal import ROUND_HALF_UP, Decimal
from functools import lru_cache
from typing import Optional

from pymongo import ReturnDocument

import config
from database import to_object_id, utcnow
from errors import (
    BadRequestError,
    ConflictError,
    ForbiddenError,
    ConfigurationError,
    InvalidSignatureError,
    ValidationFailedError,
)
from orders import CANCELLABLE_STATUSES, get_order, release_stock, status_entry

logger = logging.getLogger(__name__)

# target state -> states it may be entered from
PAYMENT_TRANSITIONS = {
    "created": ("pending", "created", "failed"),
    "completed": ("pending", "created", "failed"),
    "failed": ("pending", "created"),
    "refunded": ("completed",),
}


class RazorpayGateway:
    """Thin wrapper over the Razorpay SDK client."""

    def __init__(self, key_id: str, key_secret: str):
        import razorpay

        self.key_id = key_id
        self.client = razorpay.Client(auth=(key_id, key_secret))

    def create_order(self, amount: int, currency: str, receipt: str, notes: dict) -> dict:
        return self.client.order.create(
            data={"amount": amount, "currency": currency, "receipt": receipt, "notes": notes}
        )

    def refund(self, payment_id: str, amount: int, notes: dict) -> dict:
        return self.client.payment.refund(
            payment_id, {"amount": amount, "speed": "normal", "notes": notes}
        )


@lru_cache()
def get_gateway() -> RazorpayGateway:
    """FastAPI dependency for the payment gateway."""
    return RazorpayGateway(config.RAZORPAY_KEY_ID, config.RAZORPAY_KEY_SECRET)


def to_minor_units(amount) -> int:
    """250.5 -> 25050. Rounds half up like the gateway dashboard does."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def sign(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_signature(secret: str, message: bytes, signature: Optional[str]) -> bool:
    if not secret:
        logger.error("Signature check attempted without a configured secret")
        raise ConfigurationError("Payment signing secret is not configured")
    if not signature:
        return False
    return hmac.compare_digest(sign(secret, message), signature)


def _owned_order(db, order_id, user: dict) -> dict:
    order = get_order(db, order_id)
    if order["user"] != str(user["_id"]):
        raise ForbiddenError("Not authorized")
    return order


def _transition(db, order: dict, target: str, changes: dict) -> Optional[dict]:
    """Move payment_status to `target`. None when the current state doesn't allow it."""
    return db["order"].find_one_and_update(
        {"_id": order["_id"], "payment_status": {"$in": list(PAYMENT_TRANSITIONS[target])}},
        {"$set": {**changes, "payment_status": target, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )


# -----------------------------
# State transitions
# -----------------------------

def mark_captured(
    db,
    order: dict,
    payment_id: str,
    gateway_order_id: Optional[str] = None,
    signature: Optional[str] = None,
    note: str = "Payment completed successfully",
) -> dict:
    now = utcnow()
    changes = {
        "is_paid": True,
        "paid_at": now,
        "payment_result.razorpay_payment_id": payment_id,
        "payment_result.status": "completed",
    }
    if gateway_order_id:
        changes["payment_result.razorpay_order_id"] = gateway_order_id
    if signature:
        changes["payment_result.razorpay_signature"] = signature

    updated = _transition(db, order, "completed", changes)
    if updated is None:
        current = db["order"].find_one({"_id": order["_id"]})
        stored = current.get("payment_result") or {}
        if stored.get("razorpay_payment_id") != payment_id:
            logger.warning(
                "Order %s already %s with payment %s, ignoring capture of %s",
                order["_id"], current["payment_status"], stored.get("razorpay_payment_id"), payment_id,
            )
            return current
        logger.info("Payment %s already recorded for order %s", payment_id, order["_id"])
        if signature and not stored.get("razorpay_signature"):
            current = db["order"].find_one_and_update(
                {"_id": order["_id"]},
                {"$set": {"payment_result.razorpay_signature": signature}},
                return_document=ReturnDocument.AFTER,
            )
        return current

    logger.info("Order %s paid with payment %s", order["_id"], payment_id)
    confirmed = db["order"].find_one_and_update(
        {"_id": order["_id"], "status": "pending"},
        {"$set": {"status": "confirmed"}, "$push": {"status_history": status_entry("confirmed", note)}},
        return_document=ReturnDocument.AFTER,
    )
    if confirmed is None:
        logger.warning("Order %s paid while in status %s", order["_id"], updated["status"])
        return updated
    return confirmed


def mark_failed(db, order: dict, payment_id: Optional[str] = None, reason: Optional[str] = None) -> dict:
    changes = {"payment_result.status": "failed"}
    if payment_id:
        changes["payment_result.razorpay_payment_id"] = payment_id

    updated = _transition(db, order, "failed", changes)
    if updated is None:
        current = db["order"].find_one({"_id": order["_id"]})
        logger.info(
            "Ignoring payment failure for order %s in payment state %s",
            order["_id"], current["payment_status"],
        )
        return current

    note = f"Payment failed: {reason}" if reason else "Payment failed"
    reverted = db["order"].find_one_and_update(
        {"_id": order["_id"], "status": {"$in": list(CANCELLABLE_STATUSES)}},
        {"$set": {"status": "pending"}, "$push": {"status_history": status_entry("pending", note)}},
        return_document=ReturnDocument.AFTER,
    )
    logger.info("Payment failed for order %s", order["_id"])
    return reverted or updated


# -----------------------------
# Operations
# -----------------------------

def create_gateway_order(db, gateway, order_id, user: dict) -> dict:
    order = _owned_order(db, order_id, user)
    if order.get("is_paid") or order["payment_status"] in ("completed", "refunded"):
        raise ConflictError("Order is already paid")
    if order["status"] == "cancelled":
        raise ConflictError("Order is cancelled")

    amount = to_minor_units(order["total_price"])
    gateway_order = gateway.create_order(
        amount=amount,
        currency=config.CURRENCY,
        receipt=order["order_number"],
        notes={"order_id": str(order["_id"]), "user_id": str(user["_id"])},
    )

    if _transition(db, order, "created", {"payment_result.razorpay_order_id": gateway_order["id"]}) is None:
        # a capture slipped in while we were talking to the gateway
        raise ConflictError("Order is already paid")
    logger.info("Gateway order %s created for order %s", gateway_order["id"], order["_id"])

    return {
        "razorpay_order_id": gateway_order["id"],
        "amount": gateway_order["amount"],
        "currency": gateway_order["currency"],
        "key": config.RAZORPAY_KEY_ID,
    }


def verify_payment(
    db,
    order_id,
    user: dict,
    gateway_order_id: str,
    payment_id: str,
    signature: str,
) -> dict:
    order = _owned_order(db, order_id, user)

    stored = (order.get("payment_result") or {}).get("razorpay_order_id")
    if stored and stored != gateway_order_id:
        raise BadRequestError("Payment does not belong to this order")

    message = f"{gateway_order_id}|{payment_id}".encode("utf-8")
    if not verify_signature(config.RAZORPAY_KEY_SECRET, message, signature):
        logger.warning("Invalid payment signature for order %s", order["_id"])
        raise InvalidSignatureError("Invalid payment signature")

    return mark_captured(db, order, payment_id, gateway_order_id, signature)


def _find_webhook_order(db, entity: dict) -> Optional[dict]:
    notes = entity.get("notes") or {}
    order_id = notes.get("order_id") or notes.get("orderId")
    if order_id:
        try:
            return db["order"].find_one({"_id": to_object_id(order_id)})
        except ValidationFailedError:
            logger.warning("Webhook references malformed order id %r", order_id)
    if entity.get("order_id"):
        return db["order"].find_one({"payment_result.razorpay_order_id": entity["order_id"]})
    return None


def handle_webhook(db, raw_body: bytes, signature: Optional[str]) -> Optional[str]:
    """Apply a Razorpay webhook. Returns the event name."""
    if not verify_signature(config.RAZORPAY_WEBHOOK_SECRET, raw_body, signature):
        logger.warning("Rejected webhook with invalid signature")
        raise InvalidSignatureError("Invalid webhook signature")

    try:
        body = json.loads(raw_body)
    except ValueError:
        raise ValidationFailedError([{"field": "body", "message": "Body must be valid JSON"}])
    if not isinstance(body, dict):
        raise ValidationFailedError([{"field": "body", "message": "Body must be a JSON object"}])

    event = body.get("event")
    if event not in ("payment.captured", "payment.failed"):
        logger.info("Unhandled webhook event: %s", event)
        return event

    entity = ((body.get("payload") or {}).get("payment") or {}).get("entity") or {}
    order = _find_webhook_order(db, entity)
    if order is None:
        logger.warning("Webhook %s for unknown order (payment %s)", event, entity.get("id"))
        return event

    if event == "payment.captured":
        mark_captured(db, order, entity.get("id"), entity.get("order_id"), note="Payment captured via webhook")
    else:
        mark_failed(db, order, entity.get("id"), entity.get("error_description"))
    return event


def refund_payment(db, gateway, order_id, amount: Optional[float] = None, reason: Optional[str] = None):
    """Refund a paid order. Returns (order, refund id)."""
    order = get_order(db, order_id)
    if not order.get("is_paid"):
        raise ConflictError("Order is not paid")
    if order["payment_status"] == "refunded":
        raise ConflictError("Order is already refunded")

    if amount is None:
        amount = order["total_price"]
    if amount <= 0 or amount > order["total_price"]:
        raise ValidationFailedError(
            [{"field": "amount", "message": "Refund amount must be positive and not exceed the order total"}]
        )

    # claim the refund first so two admins can't refund the same payment twice
    claimed = _transition(db, order, "refunded", {})
    if claimed is None:
        raise ConflictError("Order payment cannot be refunded in its current state")

    try:
        refund = gateway.refund(
            order["payment_result"]["razorpay_payment_id"],
            to_minor_units(amount),
            {"reason": reason or "Refund requested"},
        )
    except Exception:
        db["order"].update_one(
            {"_id": order["_id"], "payment_status": "refunded"},
            {"$set": {"payment_status": "completed"}},
        )
        raise

    note = f"Refund processed: {refund['id']}"
    restocked = db["order"].find_one_and_update(
        {"_id": order["_id"], "status": {"$in": list(CANCELLABLE_STATUSES)}},
        {"$set": {"status": "cancelled"}, "$push": {"status_history": status_entry("cancelled", note)}},
        return_document=ReturnDocument.AFTER,
    )
    if restocked is not None:
        for line in restocked["items"]:
            release_stock(db, to_object_id(line["product"]), line["quantity"])
        updated = restocked
    else:
        updated = db["order"].find_one_and_update(
            {"_id": order["_id"]},
            {"$set": {"status": "cancelled"}, "$push": {"status_history": status_entry("cancelled", note)}},
            return_document=ReturnDocument.AFTER,
        )
    logger.info("Refund %s issued for order %s", refund["id"], order["_id"])
    return updated, refund["id"]
