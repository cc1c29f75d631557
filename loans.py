"""
Loan workflow

    reserved --accept--> checked_out --return--> returned
    checked_out --due date passed--> overdue --return--> returned
    overdue --mark lost--> lost
    reserved --cancel--> cancelled

Each move is a conditional update on the status the loan is expected to be
in, so a loan never leaves a terminal state and two callers cannot apply the
same move twice. Late fees are settled once, when the book comes back.
"""

import logging
import math
from datetime import datetime, time, timedelta, timezone
from typing import Optional

from bson import ObjectId
from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import PyMongoError

from database import as_utc, create_document, get_documents, to_object_id, utcnow
from errors import (
    FineNotFound,
    IntegrityFailure,
    InvalidDuration,
    InvalidListingType,
    InvalidTransition,
    LoanNotFound,
    SelfLoan,
)
from inventory import get_listing, release, reserve
from schemas import Fine, Loan

logger = logging.getLogger(__name__)

ONE_DAY = timedelta(days=1)


def get_loan(db, loan_id: str) -> dict:
    loan = db["loan"].find_one({"_id": to_object_id(loan_id, "loan id")})
    if loan is None:
        raise LoanNotFound(loan_id=str(loan_id))
    return loan


def end_of_due_day(due_date: datetime) -> datetime:
    """The due day counts in full; a loan is late from midnight (UTC) after it."""
    due = as_utc(due_date)
    return datetime.combine(due.date() + ONE_DAY, time.min, tzinfo=timezone.utc)


def is_past_due(loan: dict, now: datetime) -> bool:
    if not loan.get("due_date"):
        return False
    return as_utc(now) >= end_of_due_day(loan["due_date"])


def compute_fine(daily_fee: float, due_date: datetime, returned_at: datetime) -> float:
    late = as_utc(returned_at) - end_of_due_day(due_date)
    if late <= timedelta(0):
        return 0.0
    late_days = math.ceil(late / ONE_DAY)
    return round(max(daily_fee, 0) * late_days, 2)


def _advance(db, loan: dict, allowed_from, target: str, updates: Optional[dict] = None) -> dict:
    current = loan.get("status")
    if current not in allowed_from:
        raise InvalidTransition("loan", current, target)

    changes = dict(updates or {})
    changes.update({"status": target, "updated_at": utcnow()})
    updated = db["loan"].find_one_and_update(
        {"_id": loan["_id"], "status": current},
        {"$set": changes},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        latest = get_loan(db, str(loan["_id"]))
        raise InvalidTransition("loan", latest.get("status"), target)

    logger.info("Loan %s: %s -> %s", loan["_id"], current, target)
    return updated


def request_loan(db, borrower_id: str, listing_id: str, days: int) -> dict:
    listing = get_listing(db, listing_id)
    if listing.get("type") != "loan":
        raise InvalidListingType("Sale listings cannot be borrowed")
    if listing.get("seller_id") == borrower_id:
        raise SelfLoan()

    max_days = listing.get("max_days")
    if days < 1:
        raise InvalidDuration("Loan must last at least one day")
    if max_days and days > max_days:
        raise InvalidDuration(f"Loan cannot exceed {max_days} days", max_days=max_days)

    loan_oid = ObjectId()
    loan_id = str(loan_oid)
    reserve(db, listing_id, 1, "loan", loan_id)

    loan = Loan(
        listing_id=listing_id,
        lender_id=listing["seller_id"],
        borrower_id=borrower_id,
        days=days,
        daily_fee=float(listing.get("daily_fee") or 0),
    )
    doc = loan.model_dump()
    doc["_id"] = loan_oid
    try:
        create_document("loan", doc, database=db)
    except PyMongoError:
        logger.exception("Writing loan %s failed, releasing listing %s", loan_id, listing_id)
        release(db, loan_id)
        raise IntegrityFailure()

    logger.info("Loan %s requested by %s for %s day(s)", loan_id, borrower_id, days)
    return get_loan(db, loan_id)


def check_out(db, loan_id: str, now: Optional[datetime] = None) -> dict:
    loan = get_loan(db, loan_id)
    start = as_utc(now) if now else utcnow()
    return _advance(db, loan, ("reserved",), "checked_out", {
        "start_date": start,
        "due_date": start + timedelta(days=loan["days"]),
    })


def return_loan(db, loan_id: str, now: Optional[datetime] = None) -> dict:
    loan = get_loan(db, loan_id)
    returned_at = as_utc(now) if now else utcnow()
    fine = 0.0
    if loan.get("status") in ("checked_out", "overdue"):
        fine = compute_fine(loan.get("daily_fee") or 0, loan["due_date"], returned_at)

    updated = _advance(db, loan, ("checked_out", "overdue"), "returned", {
        "returned_at": returned_at,
        "fine_amount": fine,
    })
    # the book is back whatever happens to the fine record
    release(db, loan_id)

    if fine > 0:
        late_days = math.ceil((returned_at - end_of_due_day(loan["due_date"])) / ONE_DAY)
        try:
            create_document("fine", Fine(
                loan_id=loan_id,
                borrower_id=loan["borrower_id"],
                reason=f"Returned {late_days} day(s) late",
                amount=fine,
            ), database=db)
        except PyMongoError:
            logger.exception("Loan %s returned but its fine of %.2f was not recorded", loan_id, fine)
            raise IntegrityFailure()
        logger.info("Loan %s returned late, fine %.2f", loan_id, fine)

    return updated


def mark_overdue_if_past(db, loan_id: str, now: Optional[datetime] = None) -> dict:
    loan = get_loan(db, loan_id)
    now = as_utc(now) if now else utcnow()
    if loan.get("status") != "checked_out":
        raise InvalidTransition("loan", loan.get("status"), "overdue")
    if not is_past_due(loan, now):
        return loan
    return _advance(db, loan, ("checked_out",), "overdue")


def sweep_overdue(db, now: Optional[datetime] = None) -> list:
    """Flag every checked out loan whose due day has ended. Returns the loan ids."""
    now = as_utc(now) if now else utcnow()
    flagged = []
    for loan in list(db["loan"].find({"status": "checked_out"})):
        if not is_past_due(loan, now):
            continue
        result = db["loan"].update_one(
            {"_id": loan["_id"], "status": "checked_out"},
            {"$set": {"status": "overdue", "updated_at": utcnow()}},
        )
        if result.modified_count == 1:
            flagged.append(str(loan["_id"]))
    if flagged:
        logger.info("Overdue sweep flagged %s loan(s)", len(flagged))
    return flagged


def mark_lost(db, loan_id: str) -> dict:
    loan = get_loan(db, loan_id)
    return _advance(db, loan, ("overdue",), "lost")


def cancel_loan(db, loan_id: str) -> dict:
    loan = get_loan(db, loan_id)
    updated = _advance(db, loan, ("reserved",), "cancelled")
    release(db, loan_id)
    return updated


def list_loans(db, borrower_id: Optional[str] = None, lender_id: Optional[str] = None,
               status: Optional[str] = None, limit: int = 100):
    query = {}
    if borrower_id:
        query["borrower_id"] = borrower_id
    if lender_id:
        query["lender_id"] = lender_id
    if status:
        query["status"] = status
    return get_documents("loan", query, limit, database=db, sort=[("created_at", DESCENDING)])


def list_fines(db, borrower_id: str, unpaid_only: bool = False):
    query = {"borrower_id": borrower_id}
    if unpaid_only:
        query["paid"] = False
    return get_documents("fine", query, database=db, sort=[("created_at", DESCENDING)])


def pay_fine(db, fine_id: str, borrower_id: str) -> dict:
    oid = to_object_id(fine_id, "fine id")
    updated = db["fine"].find_one_and_update(
        {"_id": oid, "borrower_id": borrower_id, "paid": False},
        {"$set": {"paid": True, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is not None:
        return updated
    existing = db["fine"].find_one({"_id": oid, "borrower_id": borrower_id})
    if existing is None:
        raise FineNotFound(fine_id=fine_id)
    raise InvalidTransition("fine", "paid", "paid")
