"""
Order placement and loyalty points.

An order earns floor(amount / 1000) * 10 points. The credit is a single
guarded update on the user document: the order id is pushed onto
``user.orders`` in the same write that increments ``user.points``, and the
filter skips users that already hold the id. Applying it twice is a no-op and
concurrent placements never read-modify-write the balance.
"""

import logging
import math
import os
import time
import uuid
from datetime import datetime
from typing import List, Optional

from bson import ObjectId
from pymongo.errors import DuplicateKeyError, PyMongoError

from catalog import to_object_id
from errors import Conflict, NotFound, PointsAccrualFailure, StoreFailure, ValidationFailure
from database import get_documents
from schemas import STATUS_TRANSITIONS, Order, OrderItem, OrderStatus, ShippingInfo

logger = logging.getLogger(__name__)

POINTS_PER_STEP = 10
POINTS_STEP_AMOUNT = 1000
POINTS_RETRY_ATTEMPTS = max(1, int(os.getenv("POINTS_RETRY_ATTEMPTS", 3)))
POINTS_RETRY_BACKOFF = float(os.getenv("POINTS_RETRY_BACKOFF", 0.05))
AMOUNT_TOLERANCE = 0.01


def points_for_amount(amount: float) -> int:
    return int(math.floor(amount / POINTS_STEP_AMOUNT)) * POINTS_PER_STEP


def compute_total(db, items: List[OrderItem]) -> float:
    """Price the cart from the catalog."""
    total = 0.0
    for item in items:
        doc = db["product"].find_one({"_id": to_object_id(item.product_id)})
        if not doc:
            raise NotFound("Product not found", item.product_id)
        if not doc.get("in_stock", True):
            raise ValidationFailure("Product unavailable", item.product_id)
        total += float(doc.get("price", 0)) * item.quantity
    return round(total, 2)


def find_by_idempotency_key(db, user_id: str, key: str):
    return db["order"].find_one({"user_id": user_id, "idempotency_key": key})


def credit_points(db, order: dict) -> bool:
    """Apply the order's points to its owner. Returns False if already applied.

    The order is only marked credited once its id is on the user document, so
    an order whose owner has vanished stays pending.
    """
    order_id = str(order["_id"])
    user_oid = ObjectId(order["user_id"])
    res = db["user"].update_one(
        {"_id": user_oid, "orders": {"$ne": order_id}},
        {"$inc": {"points": order["points_earned"]}, "$push": {"orders": order_id}},
    )
    applied = res.modified_count == 1
    if not applied and db["user"].find_one({"_id": user_oid, "orders": order_id}, {"_id": 1}) is None:
        logger.warning("User %s not found, order %s left pending", order["user_id"], order_id)
        return False
    db["order"].update_one(
        {"_id": order["_id"]},
        {"$set": {"points_credited": True, "updated_at": datetime.utcnow()}},
    )
    order["points_credited"] = True
    if applied:
        logger.info("Credited %d points to user %s for order %s", order["points_earned"], order["user_id"], order_id)
    return applied


def _credit_with_retry(db, order: dict, attempts: int, backoff: float) -> bool:
    for attempt in range(1, attempts + 1):
        try:
            return credit_points(db, order)
        except PyMongoError as exc:
            if attempt == attempts:
                raise
            logger.warning(
                "Crediting points for order %s failed (attempt %d/%d): %s",
                order["_id"], attempt, attempts, exc,
            )
            time.sleep(backoff * attempt)


def _compensate(db, order: dict) -> bool:
    """Undo a placed order whose credit could not be confirmed."""
    order_id = str(order["_id"])
    try:
        db["user"].update_one(
            {"_id": ObjectId(order["user_id"]), "orders": order_id},
            {"$inc": {"points": -order["points_earned"]}, "$pull": {"orders": order_id}},
        )
        db["order"].delete_one({"_id": order["_id"]})
    except PyMongoError as exc:
        logger.error("Rollback of order %s failed, left for reconciliation: %s", order_id, exc)
        return False
    logger.warning("Order %s rolled back, loyalty points could not be credited", order_id)
    return True


def _replay(db, existing: dict, attempts: int, backoff: float):
    """Return an already placed order, finishing its credit if still pending."""
    logger.info("Replaying order %s for idempotency key %s", existing["_id"], existing["idempotency_key"])
    if not existing.get("points_credited"):
        try:
            _credit_with_retry(db, existing, attempts, backoff)
        except PyMongoError as exc:
            raise PointsAccrualFailure(str(existing["_id"]), False, str(exc))
    return existing, False


def place_order(
    db,
    user_id: str,
    items: List[OrderItem],
    shipping_info: ShippingInfo,
    payment_intent: Optional[str] = None,
    amount: Optional[float] = None,
    idempotency_key: Optional[str] = None,
    attempts: Optional[int] = None,
    backoff: Optional[float] = None,
):
    """Create an order and credit its loyalty points.

    Returns ``(order, created)``. ``created`` is False when an order with the
    same idempotency key already exists for this user; that order is returned,
    after its loyalty credit is retried if an earlier attempt left it pending.
    """
    attempts = max(1, attempts or POINTS_RETRY_ATTEMPTS)
    backoff = POINTS_RETRY_BACKOFF if backoff is None else backoff
    key = idempotency_key or uuid.uuid4().hex

    try:
        existing = find_by_idempotency_key(db, user_id, key) if idempotency_key else None
        if existing is None:
            total = compute_total(db, items)
    except PyMongoError as exc:
        raise StoreFailure("Order failed", str(exc))
    if existing is not None:
        return _replay(db, existing, attempts, backoff)

    if amount is not None and abs(amount - total) > AMOUNT_TOLERANCE:
        raise ValidationFailure("Amount does not match cart total", f"expected {total}, got {amount}")

    now = datetime.utcnow()
    order = Order(
        user_id=user_id,
        items=items,
        amount=total,
        shipping_info=shipping_info,
        payment_intent=payment_intent,
        status=OrderStatus.PROCESSING,
        points_earned=points_for_amount(total),
        idempotency_key=key,
        created_at=now,
        updated_at=now,
    ).model_dump()
    try:
        order["_id"] = db["order"].insert_one(order).inserted_id
    except DuplicateKeyError:
        # same key inserted by a concurrent request
        try:
            existing = find_by_idempotency_key(db, user_id, key)
        except PyMongoError as exc:
            raise StoreFailure("Order failed", str(exc))
        if existing is None:
            raise StoreFailure("Order failed", "duplicate order key")
        return _replay(db, existing, attempts, backoff)
    except PyMongoError as exc:
        raise StoreFailure("Order failed", str(exc))

    logger.info("Order %s placed by user %s for %.2f", order["_id"], user_id, total)

    try:
        _credit_with_retry(db, order, attempts, backoff)
    except PyMongoError as exc:
        rolled_back = _compensate(db, order)
        raise PointsAccrualFailure(str(order["_id"]), rolled_back, str(exc))

    return order, True


def reconcile_pending_points(db) -> int:
    """Credit every order whose points were never confirmed. Returns how many were confirmed."""
    count = 0
    for order in get_documents("order", {"points_credited": False}, database=db):
        credit_points(db, order)
        if order.get("points_credited"):
            count += 1
    if count:
        logger.info("Reconciled loyalty points for %d orders", count)
    return count


def derive_points(db, user_id: str) -> int:
    """Balance recomputed from the user's credited orders."""
    user = db["user"].find_one({"_id": to_object_id(user_id, "User")}, {"orders": 1})
    if not user:
        raise NotFound("User not found")
    ids = [ObjectId(o) for o in user.get("orders", [])]
    if not ids:
        return 0
    return sum(o.get("points_earned", 0) for o in db["order"].find({"_id": {"$in": ids}}, {"points_earned": 1}))


def list_orders(db, user_id: Optional[str] = None, status: Optional[str] = None):
    filt = {}
    if user_id:
        filt["user_id"] = user_id
    if status:
        filt["status"] = status
    return list(db["order"].find(filt).sort("created_at", -1))


def get_order(db, order_id: str, current: dict) -> dict:
    doc = db["order"].find_one({"_id": to_object_id(order_id, "Order")})
    if not doc or (doc["user_id"] != current["_id"] and not current.get("is_admin")):
        raise NotFound("Order not found")
    return doc


def change_status(db, order_id: str, new_status: OrderStatus) -> dict:
    oid = to_object_id(order_id, "Order")
    doc = db["order"].find_one({"_id": oid})
    if not doc:
        raise NotFound("Order not found")
    current = OrderStatus(doc.get("status", OrderStatus.PROCESSING.value))
    if new_status not in STATUS_TRANSITIONS[current]:
        raise Conflict(f"Cannot move order from {current.value} to {new_status.value}")
    res = db["order"].update_one(
        {"_id": oid, "status": current.value},
        {"$set": {"status": new_status.value, "updated_at": datetime.utcnow()}},
    )
    if res.matched_count == 0:
        raise Conflict("Order status changed concurrently")
    return db["order"].find_one({"_id": oid})
