"""
Database connection and helpers

The MongoDB handle is created once from DATABASE_URL / DATABASE_NAME. Routes
receive it through the get_db dependency so tests can swap in another
database object.
"""

import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from errors import NotFoundError, ShopError

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

_client: Optional[MongoClient] = None
db: Optional[Database] = None

if DATABASE_URL and DATABASE_NAME:
    _client = MongoClient(DATABASE_URL, tz_aware=True)
    db = _client[DATABASE_NAME]


def get_db() -> Database:
    if db is None:
        raise ShopError("Database not available")
    return db


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_object_id(id_str: str, label: str = "Document") -> ObjectId:
    """Parse a path id. Malformed ids read as missing documents."""
    if not isinstance(id_str, str) or not ObjectId.is_valid(id_str):
        raise NotFoundError(f"{label} not found")
    return ObjectId(id_str)


def create_document(database: Database, collection_name: str, data: Dict[str, Any]) -> str:
    """Insert a document stamped with created_at / updated_at and return its id."""
    now = utcnow()
    doc = dict(data)
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)


def serialize_doc(doc: Dict[str, Any]) -> Dict[str, Any]:
    if not doc:
        return doc
    doc = dict(doc)
    _id = doc.get("_id")
    if isinstance(_id, ObjectId):
        doc["id"] = str(_id)
        del doc["_id"]
    for k, v in list(doc.items()):
        if isinstance(v, ObjectId):
            doc[k] = str(v)
    return doc


def paginate(page: int, limit: int, total: int) -> Dict[str, int]:
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": (total + limit - 1) // limit,
    }


def ensure_indexes(database: Database) -> None:
    database["product"].create_index("code", unique=True)
    database["product"].create_index([("rating", DESCENDING)])
    database["product"].create_index([("category", ASCENDING)])

    database["order"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    database["order"].create_index([("status", ASCENDING), ("created_at", DESCENDING)])
    # Orders without a tracking number omit the field entirely.
    database["order"].create_index("tracking_number", unique=True, sparse=True)

    database["user"].create_index("uid", unique=True)
    database["user"].create_index("email", unique=True, sparse=True)

    database["loyaltyentry"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
