"""
Order workflow

Checkout turns the user's active cart into one order document. Line items are
embedded in the order so the order and its items are written together, and
each line keeps the price the listing had at checkout.
"""

import logging
from typing import Optional

from bson import ObjectId
from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import PyMongoError

from cart import clear, get_cart_items
from database import create_document, get_documents, to_object_id, utcnow
from errors import (
    EmptyCart,
    IntegrityFailure,
    InvalidListingType,
    InvalidTransition,
    MarketplaceError,
    OrderNotFound,
)
from inventory import get_listing, release, reserve
from schemas import Order, OrderItem

logger = logging.getLogger(__name__)

ORDER_TRANSITIONS = {
    "pending": ("paid", "cancelled"),
    "paid": ("shipped", "cancelled"),
    "shipped": ("delivered", "cancelled"),
    "delivered": (),
    "cancelled": (),
}


def get_order(db, order_id: str) -> dict:
    order = db["order"].find_one({"_id": to_object_id(order_id, "order id")})
    if order is None:
        raise OrderNotFound(order_id=str(order_id))
    return order


def _reserve_lines(db, rows, order_id: str):
    lines = []
    for row in rows:
        listing = get_listing(db, row["listing_id"])
        if listing.get("type") != "sale":
            raise InvalidListingType("Loan listings cannot be checked out", listing_id=row["listing_id"])
        reserved = reserve(db, row["listing_id"], row["quantity"], "order", order_id)
        unit_price = float(reserved.get("price") or 0)
        lines.append(OrderItem(
            id=str(ObjectId()),
            listing_id=row["listing_id"],
            seller_id=reserved["seller_id"],
            edition_id=reserved["edition_id"],
            quantity=row["quantity"],
            unit_price=unit_price,
            subtotal=round(unit_price * row["quantity"], 2),
        ))
    return lines


def checkout(db, user_id: str) -> dict:
    """Commit the active cart as a pending order.

    Either every cart line is reserved and the order is written, or nothing
    is: a failed reservation or a failed write hands back whatever stock this
    attempt already took.
    """
    cart = db["cart"].find_one({"user_id": user_id, "is_active": True})
    rows = get_cart_items(db, str(cart["_id"])) if cart else []
    if not rows:
        raise EmptyCart()

    order_oid = ObjectId()
    order_id = str(order_oid)

    try:
        lines = _reserve_lines(db, rows, order_id)
    except MarketplaceError as exc:
        released = release(db, order_id)
        logger.warning("Checkout for %s aborted (%s), released %s reservation(s)", user_id, exc.code, released)
        raise
    except PyMongoError:
        logger.exception("Reserving stock for order %s failed, rolling back reservations", order_id)
        release(db, order_id)
        raise IntegrityFailure()

    subtotal = round(sum(line.subtotal for line in lines), 2)
    order = Order(buyer_id=user_id, items=lines, subtotal=subtotal, total=subtotal)
    doc = order.model_dump()
    doc["_id"] = order_oid

    try:
        create_document("order", doc, database=db)
    except PyMongoError:
        logger.exception("Writing order %s failed, rolling back reservations", order_id)
        release(db, order_id)
        raise IntegrityFailure()

    try:
        clear(db, str(cart["_id"]))
    except PyMongoError:
        logger.exception("Order %s created but cart %s was not cleared", order_id, cart["_id"])

    logger.info("Order %s created for %s: %s line(s), total %.2f", order_id, user_id, len(lines), subtotal)
    return get_order(db, order_id)


def transition(db, order_id: str, new_status: str) -> dict:
    order = get_order(db, order_id)
    current = order.get("status")
    if new_status not in ORDER_TRANSITIONS.get(current, ()):
        raise InvalidTransition("order", current, new_status)

    updates = {"status": new_status, "updated_at": utcnow()}
    if new_status == "paid":
        updates["payment_status"] = "paid"
    if new_status == "cancelled" and order.get("payment_status") == "paid":
        updates["payment_status"] = "refunded"

    updated = db["order"].find_one_and_update(
        {"_id": order["_id"], "status": current},
        {"$set": updates},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        latest = get_order(db, order_id)
        raise InvalidTransition("order", latest.get("status"), new_status)

    if new_status == "cancelled":
        release(db, order_id)
    logger.info("Order %s: %s -> %s", order_id, current, new_status)
    return updated


def record_payment(db, order_id: str, outcome: str) -> dict:
    """Apply a payment provider outcome ("paid" or "failed") to a pending order."""
    if outcome == "paid":
        return transition(db, order_id, "paid")

    order = get_order(db, order_id)
    updated = db["order"].find_one_and_update(
        {"_id": order["_id"], "status": "pending"},
        {"$set": {"payment_status": "failed", "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise InvalidTransition("payment", order.get("payment_status"), "failed")
    logger.warning("Payment failed for order %s", order_id)
    return updated


def list_orders(db, buyer_id: Optional[str] = None, seller_id: Optional[str] = None,
                status: Optional[str] = None, limit: int = 100):
    query = {}
    if buyer_id:
        query["buyer_id"] = buyer_id
    if seller_id:
        query["items.seller_id"] = seller_id
    if status:
        query["status"] = status
    return get_documents("order", query, limit, database=db, sort=[("created_at", DESCENDING)])
