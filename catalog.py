"""
Catalog: books, editions, seller listings, reviews and wishlists
"""

import logging
import re
from typing import Optional

from pydantic import ValidationError
from pymongo import DESCENDING

from database import create_document, get_documents, to_object_id, utcnow
from errors import NotFound, ValidationFailure
from schemas import Book, Edition, Listing, Review

logger = logging.getLogger(__name__)


def _find(db, collection: str, doc_id: str, label: str) -> dict:
    doc = db[collection].find_one({"_id": to_object_id(doc_id, f"{label} id")})
    if doc is None:
        raise NotFound(f"{label.capitalize()} not found")
    return doc


def _validated(model, **fields):
    try:
        return model(**fields)
    except ValidationError as exc:
        raise ValidationFailure(exc.errors()[0].get("msg", "Invalid data"))


def get_book(db, book_id: str) -> dict:
    return _find(db, "book", book_id, "book")


def get_edition(db, edition_id: str) -> dict:
    return _find(db, "edition", edition_id, "edition")


def create_book(db, **fields) -> dict:
    book_id = create_document("book", _validated(Book, **fields), database=db)
    return get_book(db, book_id)


def create_edition(db, book_id: str, **fields) -> dict:
    get_book(db, book_id)
    edition_id = create_document("edition", _validated(Edition, book_id=book_id, **fields), database=db)
    return get_edition(db, edition_id)


def list_books(db, q: Optional[str] = None, category: Optional[str] = None, limit: int = 60):
    query = {}
    if q:
        pattern = {"$regex": re.escape(q), "$options": "i"}
        query["$or"] = [{"title": pattern}, {"authors": pattern}]
    if category:
        query["category"] = category
    books = get_documents("book", query, limit, database=db)
    for book in books:
        book["editions"] = list(db["edition"].find({"book_id": str(book["_id"])}))
    return books


def create_listing(db, seller_id: str, **fields) -> dict:
    get_edition(db, fields.get("edition_id"))
    listing = _validated(Listing, seller_id=seller_id, **fields)
    listing_id = create_document("listing", listing, database=db)
    logger.info("Seller %s listed edition %s for %s", seller_id, listing.edition_id, listing.type)
    return _find(db, "listing", listing_id, "listing")


def _with_details(db, listing: dict) -> dict:
    edition = db["edition"].find_one({"_id": to_object_id(listing["edition_id"], "edition id")})
    book = None
    if edition:
        book = db["book"].find_one({"_id": to_object_id(edition["book_id"], "book id")})
    return {**listing, "edition": edition, "book": book}


def get_listing_detail(db, listing_id: str) -> dict:
    return _with_details(db, _find(db, "listing", listing_id, "listing"))


def browse_listings(db, q: Optional[str] = None, listing_type: Optional[str] = None,
                    seller_id: Optional[str] = None, min_price: Optional[float] = None,
                    max_price: Optional[float] = None, include_inactive: bool = False, limit: int = 60):
    query = {}
    if not include_inactive:
        query["is_active"] = True
    if listing_type:
        query["type"] = listing_type
    if seller_id:
        query["seller_id"] = seller_id
    price_filter = {}
    if min_price is not None:
        price_filter["$gte"] = float(min_price)
    if max_price is not None:
        price_filter["$lte"] = float(max_price)
    if price_filter:
        query["price"] = price_filter
    if q:
        book_ids = [str(b["_id"]) for b in list_books(db, q=q, limit=200)]
        editions = db["edition"].find({"book_id": {"$in": book_ids}})
        query["edition_id"] = {"$in": [str(e["_id"]) for e in editions]}

    listings = get_documents("listing", query, limit, database=db, sort=[("created_at", DESCENDING)])
    return [_with_details(db, listing) for listing in listings]


def add_review(db, reviewer_id: str, edition_id: str, rating: int, body: Optional[str] = None) -> dict:
    get_edition(db, edition_id)
    review = _validated(Review, reviewer_id=reviewer_id, edition_id=edition_id, rating=rating, body=body)
    review_id = create_document("review", review, database=db)
    return _find(db, "review", review_id, "review")


def list_reviews(db, edition_id: str):
    return get_documents("review", {"edition_id": edition_id}, 100, database=db,
                         sort=[("created_at", DESCENDING)])


def add_to_wishlist(db, user_id: str, edition_id: str) -> dict:
    get_edition(db, edition_id)
    now = utcnow()
    db["wishlist_item"].update_one(
        {"user_id": user_id, "edition_id": edition_id},
        {"$setOnInsert": {"created_at": now, "updated_at": now}},
        upsert=True,
    )
    return db["wishlist_item"].find_one({"user_id": user_id, "edition_id": edition_id})


def list_wishlist(db, user_id: str):
    items = get_documents("wishlist_item", {"user_id": user_id}, database=db, sort=[("created_at", DESCENDING)])
    for item in items:
        item["edition"] = db["edition"].find_one({"_id": to_object_id(item["edition_id"], "edition id")})
    return items


def remove_from_wishlist(db, user_id: str, edition_id: str):
    result = db["wishlist_item"].delete_one({"user_id": user_id, "edition_id": edition_id})
    if result.deleted_count == 0:
        raise NotFound("Edition is not in your wishlist")
