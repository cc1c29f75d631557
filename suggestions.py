"""
Suggestion voting

A user holds at most one vote per suggestion. Voting again in the same
direction takes the vote back; voting the other way flips it, which moves the
tally by two.
"""

import logging

from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from database import create_document, get_documents, to_object_id, utcnow
from errors import (
    IntegrityFailure,
    InvalidTransition,
    SuggestionNotFound,
    ValidationFailure,
    VoteConflict,
)
from schemas import Suggestion, Vote

logger = logging.getLogger(__name__)

VOTE_WEIGHT = {"up": 1, "down": -1}


def get_suggestion(db, suggestion_id: str) -> dict:
    suggestion = db["suggestion"].find_one({"_id": to_object_id(suggestion_id, "suggestion id")})
    if suggestion is None:
        raise SuggestionNotFound(suggestion_id=str(suggestion_id))
    return suggestion


def create_suggestion(db, user_id: str, title: str, author: str, description=None,
                      category=None, language=None) -> dict:
    suggestion = Suggestion(
        title=title,
        author=author,
        description=description,
        category=category,
        language=language,
        suggested_by=user_id,
    )
    suggestion_id = create_document("suggestion", suggestion, database=db)
    return get_suggestion(db, suggestion_id)


def list_suggestions(db, status: str = "pending", limit: int = 50):
    return get_documents("suggestion", {"status": status}, limit, database=db,
                         sort=[("votes", DESCENDING), ("created_at", DESCENDING)])


def set_status(db, suggestion_id: str, status: str) -> dict:
    suggestion = get_suggestion(db, suggestion_id)
    updated = db["suggestion"].find_one_and_update(
        {"_id": suggestion["_id"], "status": "pending"},
        {"$set": {"status": status, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise InvalidTransition("suggestion", suggestion.get("status"), status)
    return updated


def _apply_vote(db, suggestion_id: str, user_id: str, direction: str):
    """Write the vote row. Returns how far the tally has to move and the row as it was."""
    existing = db["vote"].find_one({"suggestion_id": suggestion_id, "user_id": user_id})

    if existing is None:
        try:
            create_document("vote", Vote(suggestion_id=suggestion_id, user_id=user_id, direction=direction),
                            database=db)
        except DuplicateKeyError:
            raise VoteConflict()
        return VOTE_WEIGHT[direction], None

    if existing["direction"] == direction:
        result = db["vote"].delete_one({"_id": existing["_id"], "direction": direction})
        if result.deleted_count != 1:
            raise VoteConflict()
        return -VOTE_WEIGHT[direction], existing

    result = db["vote"].update_one(
        {"_id": existing["_id"], "direction": existing["direction"]},
        {"$set": {"direction": direction, "updated_at": utcnow()}},
    )
    if result.modified_count != 1:
        raise VoteConflict()
    return 2 * VOTE_WEIGHT[direction], existing


def _restore_vote(db, suggestion_id: str, user_id: str, direction: str, previous):
    """Put the vote row back the way it was before _apply_vote."""
    if previous is None:
        db["vote"].delete_one({"suggestion_id": suggestion_id, "user_id": user_id, "direction": direction})
    elif previous["direction"] == direction:
        db["vote"].insert_one(previous)
    else:
        db["vote"].update_one(
            {"_id": previous["_id"], "direction": direction},
            {"$set": {"direction": previous["direction"], "updated_at": utcnow()}},
        )


def vote(db, suggestion_id: str, user_id: str, direction: str) -> dict:
    if direction not in VOTE_WEIGHT:
        raise ValidationFailure("Vote must be 'up' or 'down'")
    suggestion = get_suggestion(db, suggestion_id)

    delta, previous = _apply_vote(db, suggestion_id, user_id, direction)
    try:
        updated = db["suggestion"].find_one_and_update(
            {"_id": suggestion["_id"]},
            {"$inc": {"votes": delta}, "$set": {"updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
    except PyMongoError:
        logger.exception("Tally update for suggestion %s failed, restoring %s's vote", suggestion_id, user_id)
        _restore_vote(db, suggestion_id, user_id, direction, previous)
        raise IntegrityFailure()
    logger.info("Suggestion %s: %s voted %s, tally %+d -> %s", suggestion_id, user_id, direction, delta,
                updated["votes"])
    return updated


def user_vote(db, suggestion_id: str, user_id: str):
    existing = db["vote"].find_one({"suggestion_id": suggestion_id, "user_id": user_id})
    return existing["direction"] if existing else None
