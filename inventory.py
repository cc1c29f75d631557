"""
Listing availability

Stock for sale listings is taken with a single conditional update, so two
buyers racing for the last copy cannot both win. Every hold is written to the
reservation ledger keyed by (owner_id, listing_id); releasing flips the ledger
row first and only then gives the stock back, which makes release idempotent.
"""

import logging

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from database import create_document, to_object_id, utcnow
from errors import (
    IntegrityFailure,
    InvalidQuantity,
    InsufficientStock,
    ListingInactive,
    ListingNotFound,
)
from schemas import Reservation

logger = logging.getLogger(__name__)


def get_listing(db, listing_id: str) -> dict:
    listing = db["listing"].find_one({"_id": to_object_id(listing_id, "listing id")})
    if listing is None:
        raise ListingNotFound(listing_id=str(listing_id))
    return listing


def is_available(db, listing_id: str) -> bool:
    listing = db["listing"].find_one({"_id": to_object_id(listing_id, "listing id")})
    if not listing or not listing.get("is_active"):
        return False
    if listing.get("type") == "loan":
        return True
    return listing.get("quantity", 0) > 0


def _take_stock(db, listing_id: str, quantity: int) -> dict:
    oid = to_object_id(listing_id, "listing id")
    updated = db["listing"].find_one_and_update(
        {"_id": oid, "is_active": True, "quantity": {"$gte": quantity}},
        {"$inc": {"quantity": -quantity}, "$set": {"updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is not None:
        if updated["quantity"] == 0:
            db["listing"].update_one(
                {"_id": oid, "quantity": 0, "is_active": True},
                {"$set": {"is_active": False, "inactive_reason": "sold_out", "updated_at": utcnow()}},
            )
        return updated

    current = db["listing"].find_one({"_id": oid})
    if current is None:
        raise ListingNotFound(listing_id=listing_id)
    if not current.get("is_active") and current.get("inactive_reason") != "sold_out":
        raise ListingInactive(listing_id)
    raise InsufficientStock(listing_id)


def _give_back_stock(db, listing_id: str, quantity: int):
    oid = to_object_id(listing_id, "listing id")
    db["listing"].update_one({"_id": oid}, {"$inc": {"quantity": quantity}, "$set": {"updated_at": utcnow()}})
    # only listings that ran out come back; withdrawn ones stay hidden
    db["listing"].update_one(
        {"_id": oid, "inactive_reason": "sold_out", "quantity": {"$gt": 0}},
        {"$set": {"is_active": True, "inactive_reason": None}},
    )


def reserve(db, listing_id: str, quantity: int, owner_type: str, owner_id: str) -> dict:
    """Hold `quantity` units of a listing for an order or loan.

    Sale listings lose stock immediately; loan listings only need to be
    active. Returns the listing as it stands after the hold.
    """
    if quantity < 1:
        raise InvalidQuantity()

    listing = get_listing(db, listing_id)
    if listing.get("type") == "sale":
        listing = _take_stock(db, listing_id, quantity)
        decremented = True
    else:
        if not listing.get("is_active"):
            raise ListingInactive(listing_id)
        decremented = False

    entry = Reservation(
        owner_type=owner_type,
        owner_id=owner_id,
        listing_id=listing_id,
        quantity=quantity,
        decremented=decremented,
    )
    try:
        create_document("reservation", entry, database=db)
    except (DuplicateKeyError, PyMongoError):
        if decremented:
            _give_back_stock(db, listing_id, quantity)
        logger.exception("Could not record reservation of listing %s for %s %s", listing_id, owner_type, owner_id)
        raise IntegrityFailure()

    logger.info("Reserved %s x listing %s for %s %s", quantity, listing_id, owner_type, owner_id)
    return listing


def release(db, owner_id: str, listing_id: str = None) -> int:
    """Release the holds of an order or loan. Returns how many rows were released."""
    query = {"owner_id": owner_id, "status": "held"}
    if listing_id is not None:
        query["listing_id"] = listing_id

    released = 0
    for row in list(db["reservation"].find(query)):
        flipped = db["reservation"].update_one(
            {"_id": row["_id"], "status": "held"},
            {"$set": {"status": "released", "updated_at": utcnow()}},
        )
        if flipped.modified_count != 1:
            continue
        if row.get("decremented"):
            _give_back_stock(db, row["listing_id"], row["quantity"])
        released += 1
        logger.info("Released %s x listing %s held by %s", row["quantity"], row["listing_id"], owner_id)
    return released


def deactivate(db, listing_id: str) -> dict:
    updated = db["listing"].find_one_and_update(
        {"_id": to_object_id(listing_id, "listing id")},
        {"$set": {"is_active": False, "inactive_reason": "withdrawn", "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise ListingNotFound(listing_id=listing_id)
    return updated


def restock(db, listing_id: str, quantity: int) -> dict:
    if quantity < 1:
        raise InvalidQuantity()
    get_listing(db, listing_id)
    _give_back_stock(db, listing_id, quantity)
    return get_listing(db, listing_id)
