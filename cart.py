"""
Cart aggregation

One active cart per user, created on first use. Adding a listing that is
already in the cart bumps the existing row instead of inserting a new one.
Stock is not checked here; checkout is where availability is decided.
"""

import logging

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import to_object_id, utcnow
from errors import CartItemNotFound, InvalidListingType, InvalidQuantity
from inventory import get_listing

logger = logging.getLogger(__name__)


def _active_cart(db, user_id: str, create: bool = False):
    query = {"user_id": user_id, "is_active": True}
    if not create:
        return db["cart"].find_one(query)
    now = utcnow()
    try:
        return db["cart"].find_one_and_update(
            query,
            {"$setOnInsert": {"created_at": now, "updated_at": now}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
    except DuplicateKeyError:
        # another request created the cart first
        return db["cart"].find_one(query)


def get_cart_items(db, cart_id: str):
    return list(db["cart_item"].find({"cart_id": cart_id}).sort([("created_at", 1), ("_id", 1)]))


def get_active_cart(db, user_id: str, create: bool = False):
    """Return {"cart", "items", "total"} for the user's active cart.

    Items carry their listing, and the total uses current listing prices.
    """
    cart = _active_cart(db, user_id, create=create)
    if cart is None:
        return {"cart": None, "items": [], "total": 0.0}

    items = []
    total = 0.0
    for row in get_cart_items(db, str(cart["_id"])):
        listing = db["listing"].find_one({"_id": to_object_id(row["listing_id"], "listing id")})
        price = float(listing.get("price") or 0) if listing else 0.0
        line_total = price * row["quantity"]
        total += line_total
        items.append({**row, "listing": listing, "line_total": round(line_total, 2)})
    return {"cart": cart, "items": items, "total": round(total, 2)}


def add_item(db, user_id: str, listing_id: str, quantity: int = 1) -> dict:
    if quantity < 1:
        raise InvalidQuantity()
    listing = get_listing(db, listing_id)
    if listing.get("type") != "sale":
        raise InvalidListingType("Loan listings are borrowed, not bought")

    cart = _active_cart(db, user_id, create=True)
    cart_id = str(cart["_id"])
    now = utcnow()
    key = {"cart_id": cart_id, "listing_id": listing_id}
    try:
        item = db["cart_item"].find_one_and_update(
            key,
            {
                "$inc": {"quantity": quantity},
                "$set": {"updated_at": now},
                "$setOnInsert": {"created_at": now},
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
    except DuplicateKeyError:
        # lost the insert race, the row exists now
        item = db["cart_item"].find_one_and_update(
            key,
            {"$inc": {"quantity": quantity}, "$set": {"updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )
    logger.info("Cart %s: listing %s now x%s", cart_id, listing_id, item["quantity"])
    return item


def _owned_item(db, user_id: str, cart_item_id: str):
    cart = _active_cart(db, user_id)
    item_oid = to_object_id(cart_item_id, "cart item id")
    if cart is None:
        raise CartItemNotFound()
    item = db["cart_item"].find_one({"_id": item_oid, "cart_id": str(cart["_id"])})
    if item is None:
        raise CartItemNotFound()
    return item


def update_quantity(db, user_id: str, cart_item_id: str, new_quantity: int) -> dict:
    if new_quantity < 1:
        raise InvalidQuantity()
    item = _owned_item(db, user_id, cart_item_id)
    return db["cart_item"].find_one_and_update(
        {"_id": item["_id"]},
        {"$set": {"quantity": new_quantity, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )


def remove_item(db, user_id: str, cart_item_id: str):
    item = _owned_item(db, user_id, cart_item_id)
    db["cart_item"].delete_one({"_id": item["_id"]})


def clear(db, cart_id: str) -> int:
    result = db["cart_item"].delete_many({"cart_id": cart_id})
    return result.deleted_count
