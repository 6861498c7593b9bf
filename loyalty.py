"""
Loyalty accounting

Points are credited as whole numbers and never expire. Tiers are 500 points
wide and start at tier 1.
"""

import logging
from typing import Any, Dict, Optional

from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import PyMongoError

from database import create_document, to_object_id, utcnow
from errors import NotFoundError, ValidationError
from schemas import GUEST_USER_ID, LoyaltyEntry

logger = logging.getLogger(__name__)

POINTS_PER_TIER = 500


def tier_of(points: int) -> int:
    return points // POINTS_PER_TIER + 1


def points_to_next_tier(points: int) -> int:
    return POINTS_PER_TIER - points % POINTS_PER_TIER


def points_for_amount(amount: float) -> int:
    """One point per whole currency unit spent."""
    return int(amount) if amount > 0 else 0


def credit(
    db: Database,
    user_id: str,
    points: int,
    reason: str,
    order_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Add points to a user's balance and record the credit in the ledger.

    The balance is authoritative. Once the increment is applied a failed
    ledger write is logged, not raised, so callers never retry a credit
    that already landed.
    """
    if isinstance(points, bool) or not isinstance(points, int) or points < 0:
        raise ValidationError("Points must be a non-negative integer")
    user = db["user"].find_one_and_update(
        {"_id": to_object_id(user_id, "User")},
        {"$inc": {"loyalty_points": points}, "$set": {"updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if user is None:
        raise NotFoundError("User not found")
    entry = LoyaltyEntry(user_id=user_id, points=points, reason=reason, order_id=order_id)
    try:
        create_document(db, "loyaltyentry", entry.model_dump(exclude_none=True))
    except PyMongoError:
        logger.error("Ledger entry for %s points to user %s not recorded", points, user_id, exc_info=True)
    logger.info("Credited %s loyalty points to user %s (%s)", points, user_id, reason)
    return user


def credit_order(db: Database, order: Dict[str, Any]) -> bool:
    """
    Apply the points an order earned, at most once.

    The order is claimed first by flipping loyalty_credited; if the balance
    increment then fails the claim is released so the credit can be settled
    later. Returns True when the points were applied by this call.
    """
    if order.get("user_id") == GUEST_USER_ID or order.get("loyalty_credited"):
        return False
    claimed = db["order"].find_one_and_update(
        {"_id": order["_id"], "loyalty_credited": False},
        {"$set": {"loyalty_credited": True}},
    )
    if claimed is None:
        return False
    try:
        credit(
            db,
            order["user_id"],
            order.get("loyalty_points", 0),
            reason="order",
            order_id=str(order["_id"]),
        )
    except (NotFoundError, PyMongoError):
        logger.warning("Loyalty credit for order %s left pending", order["_id"], exc_info=True)
        db["order"].update_one({"_id": order["_id"]}, {"$set": {"loyalty_credited": False}})
        return False
    order["loyalty_credited"] = True
    return True


def settle_pending_credits(db: Database) -> int:
    pending = list(db["order"].find(
        {"user_id": {"$ne": GUEST_USER_ID}, "loyalty_credited": False, "loyalty_points": {"$gt": 0}}
    ))
    settled = 0
    for order in pending:
        if credit_order(db, order):
            settled += 1
    if settled:
        logger.info("Settled %s pending loyalty credits", settled)
    return settled
