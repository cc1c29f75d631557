"""
Database helpers

MongoDB connection configured from the environment, plus the small
create/read helpers the routes and workflows share.
"""

import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from bson import ObjectId
from dotenv import load_dotenv
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient

from errors import InvalidId

load_dotenv()

_client = None
db = None

database_url = os.getenv("DATABASE_URL")
database_name = os.getenv("DATABASE_NAME")

if database_url and database_name:
    _client = MongoClient(database_url, tz_aware=True)
    db = _client[database_name]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Mongo hands back naive datetimes unless the client is tz aware."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def create_document(collection_name: str, data: Union[BaseModel, dict], database=None) -> str:
    """Insert a document with created_at/updated_at timestamps and return its id"""
    database = database if database is not None else db
    if database is None:
        raise Exception("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")

    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = data.copy()

    now = utcnow()
    data_dict.setdefault("created_at", now)
    data_dict["updated_at"] = now

    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None,
                  database=None, sort=None):
    """Get documents from collection"""
    database = database if database is not None else db
    if database is None:
        raise Exception("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")

    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def to_object_id(value: str, label: str = "id") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    if not value or not ObjectId.is_valid(value):
        raise InvalidId(f"Invalid {label}")
    return ObjectId(value)


def serialize_doc(doc: Optional[Dict[str, Any]]):
    """Swap Mongo's _id for a string id, including in embedded documents"""
    if not doc:
        return doc
    out = {}
    for k, v in doc.items():
        if k == "_id":
            out["id"] = str(v)
        elif isinstance(v, ObjectId):
            out[k] = str(v)
        elif isinstance(v, dict):
            out[k] = serialize_doc(v)
        elif isinstance(v, list):
            out[k] = [serialize_doc(i) if isinstance(i, dict) else i for i in v]
        else:
            out[k] = v
    return out


def ensure_indexes(database=None):
    """Unique keys the workflows rely on for merge and toggle semantics"""
    database = database if database is not None else db
    if database is None:
        return
    database["cart_item"].create_index([("cart_id", ASCENDING), ("listing_id", ASCENDING)], unique=True)
    database["vote"].create_index([("suggestion_id", ASCENDING), ("user_id", ASCENDING)], unique=True)
    database["reservation"].create_index([("owner_id", ASCENDING), ("listing_id", ASCENDING)], unique=True)
    database["wishlist_item"].create_index([("user_id", ASCENDING), ("edition_id", ASCENDING)], unique=True)
    database["user"].create_index("email", unique=True)
    database["cart"].create_index("user_id", unique=True, partialFilterExpression={"is_active": True},
                                  name="one_active_cart_per_user")
    database["loan"].create_index("status")
