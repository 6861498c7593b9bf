"""
Order lifecycle

    pending -> confirmed -> processing -> shipped -> delivered

An order may be cancelled until it ships. Confirming an order assigns its
tracking number (once), shipping it sets the estimated delivery date.
Totals are always computed from the stored catalog prices.
"""

import logging
import time
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import loyalty
from catalog import serialize_product
from database import create_document, paginate, serialize_doc, to_object_id, utcnow
from errors import ConflictError, InvalidStateError, NotFoundError, UnauthorizedError, ValidationError
from schemas import GUEST_USER_ID, Address, CartItem, Order, OrderStatus

logger = logging.getLogger(__name__)

MERGED_SHIPPING_COST = 5.99
PER_PACKAGE_SHIPPING_COST = 3.99
ESTIMATED_DELIVERY_DAYS = 7
TRACKING_NUMBER_ATTEMPTS = 3
MAX_QUANTITY = 20

NON_CANCELLABLE = (OrderStatus.SHIPPED, OrderStatus.DELIVERED)


def generate_tracking_number() -> str:
    return "SH" + str(time.time_ns() // 1000)[-8:].upper()


def quote_shipping(package_count: int, merged: bool = True) -> float:
    if merged:
        return MERGED_SHIPPING_COST
    return round(package_count * PER_PACKAGE_SHIPPING_COST, 2)


def order_number(order_id: str) -> str:
    return order_id[-8:].upper()


def serialize_order(db: Database, doc: Dict[str, Any]) -> Dict[str, Any]:
    """Order document for responses, with each item's product expanded."""
    order = serialize_doc(doc)
    order["order_number"] = order_number(order["id"])
    ids = [ObjectId(it["product_id"]) for it in order.get("items", []) if ObjectId.is_valid(it["product_id"])]
    products = {str(p["_id"]): p for p in db["product"].find({"_id": {"$in": ids}})}
    items = []
    for it in order.get("items", []):
        prod = products.get(it["product_id"])
        items.append({**it, "product": serialize_product(prod) if prod else None})
    order["items"] = items
    return order


def _parse_status(status: Any) -> OrderStatus:
    try:
        return OrderStatus(status)
    except ValueError:
        raise ValidationError("Invalid order status")


def create_order(
    db: Database,
    items: List[CartItem],
    shipping_address: Address,
    requester_id: str,
    merge_shipping: bool = True,
) -> Dict[str, Any]:
    if not items:
        raise ValidationError("Order must contain at least one item")

    total = 0.0
    for item in items:
        if not 1 <= item.quantity <= MAX_QUANTITY:
            raise ValidationError(f"Quantity must be between 1 and {MAX_QUANTITY}")
        product = None
        if ObjectId.is_valid(item.product_id):
            product = db["product"].find_one({"_id": ObjectId(item.product_id)})
        if not product:
            raise NotFoundError(f"Product not found: {item.product_id}")
        if not product.get("in_stock", True):
            raise InvalidStateError(f"Product out of stock: {product.get('name')}")
        total += product["price"] * item.quantity
    total = round(total, 2)

    is_guest = requester_id == GUEST_USER_ID
    order = Order(
        user_id=requester_id,
        items=items,
        total_amount=total,
        shipping_cost=quote_shipping(len(items), merge_shipping),
        status=OrderStatus.PENDING,
        shipping_address=shipping_address,
        loyalty_points=0 if is_guest else loyalty.points_for_amount(total),
    )
    order_id = create_document(db, "order", order.model_dump(mode="json", exclude_none=True))
    doc = db["order"].find_one({"_id": ObjectId(order_id)})
    logger.info("Created order %s for %s (total %.2f)", order_id, requester_id, total)

    if not is_guest:
        loyalty.credit_order(db, doc)
    return doc


def _assign_tracking_number(db: Database, oid: ObjectId, updates: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    for _ in range(TRACKING_NUMBER_ATTEMPTS):
        tracking_number = generate_tracking_number()
        try:
            doc = db["order"].find_one_and_update(
                {"_id": oid, "tracking_number": {"$exists": False}},
                {"$set": {**updates, "tracking_number": tracking_number}},
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            logger.warning("Tracking number %s already taken, retrying", tracking_number)
            continue
        if doc is None:
            # Assigned by a concurrent confirmation.
            return db["order"].find_one_and_update(
                {"_id": oid}, {"$set": updates}, return_document=ReturnDocument.AFTER
            )
        return doc
    raise ConflictError("Could not assign a unique tracking number")


def transition_order(db: Database, order_id: str, new_status: Any) -> Dict[str, Any]:
    status = _parse_status(new_status)
    if not ObjectId.is_valid(order_id):
        raise ValidationError("Invalid order ID")
    oid = ObjectId(order_id)
    order = db["order"].find_one({"_id": oid})
    if not order:
        raise NotFoundError("Order not found")

    current = OrderStatus(order["status"])
    if status == OrderStatus.CANCELLED and current in NON_CANCELLABLE:
        raise InvalidStateError("Cannot cancel order that has been shipped")

    now = utcnow()
    updates: Dict[str, Any] = {"status": status.value, "updated_at": now}
    if status == OrderStatus.SHIPPED:
        updates["estimated_delivery"] = now + timedelta(days=ESTIMATED_DELIVERY_DAYS)

    if status == OrderStatus.CONFIRMED and not order.get("tracking_number"):
        doc = _assign_tracking_number(db, oid, updates)
    elif status == OrderStatus.CANCELLED:
        doc = db["order"].find_one_and_update(
            {"_id": oid, "status": {"$nin": [s.value for s in NON_CANCELLABLE]}},
            {"$set": updates},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            # Shipped after the read above.
            raise InvalidStateError("Cannot cancel order that has been shipped")
    else:
        doc = db["order"].find_one_and_update(
            {"_id": oid}, {"$set": updates}, return_document=ReturnDocument.AFTER
        )
    if doc is None:
        raise NotFoundError("Order not found")
    logger.info("Order %s moved from %s to %s", order_id, current.value, status.value)
    return doc


def cancel_order(db: Database, order_id: str, requester_id: str) -> Dict[str, Any]:
    if requester_id == GUEST_USER_ID:
        raise UnauthorizedError("Access token required")
    oid = to_object_id(order_id, "Order")
    order = db["order"].find_one({"_id": oid, "user_id": requester_id})
    if not order:
        raise NotFoundError("Order not found")
    if OrderStatus(order["status"]) in NON_CANCELLABLE:
        raise InvalidStateError("Cannot cancel order that has been shipped")

    doc = db["order"].find_one_and_update(
        {"_id": oid, "status": {"$nin": [s.value for s in NON_CANCELLABLE]}},
        {"$set": {"status": OrderStatus.CANCELLED.value, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if doc is None:
        raise InvalidStateError("Cannot cancel order that has been shipped")
    logger.info("Order %s cancelled by %s", order_id, requester_id)
    return doc


def list_orders(
    db: Database,
    requester_id: str,
    page: int = 1,
    limit: int = 20,
    status: Optional[Any] = None,
) -> Tuple[List[Dict[str, Any]], Dict[str, int]]:
    page = max(page, 1)
    limit = min(max(limit, 1), 100)
    query: Dict[str, Any] = {"user_id": requester_id}
    if status is not None:
        query["status"] = _parse_status(status).value

    cursor = (
        db["order"].find(query)
        .sort("created_at", DESCENDING)
        .skip((page - 1) * limit)
        .limit(limit)
    )
    items = [serialize_order(db, d) for d in cursor]
    total = db["order"].count_documents(query)
    return items, paginate(page, limit, total)


def get_order(db: Database, order_id: str, requester_id: str) -> Dict[str, Any]:
    order = db["order"].find_one({"_id": to_object_id(order_id, "Order"), "user_id": requester_id})
    if not order:
        raise NotFoundError("Order not found")
    return order
